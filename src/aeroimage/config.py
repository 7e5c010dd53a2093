#
# config.py - build configuration
#
# Copyright (C) 2021  The Aero Project Developers
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.
#
import logging
logger = logging.getLogger("aeroimage.config")

import os
import re
import configparser
from collections import namedtuple
from enum import Enum

from aeroimage.sysutils import joinpaths

DEFAULT_CONF = "/etc/aeroimage/aeroimage.conf"

LIMINE_URL = "https://github.com/limine-bootloader/limine.git"
LIMINE_REVISION = "v2.0-branch-binary"

class BootMode(Enum):
    BIOS = "bios"
    EFI = "efi"


_BuildConfig = namedtuple("_BuildConfig", ["boot_mode", "kernel", "bootloader_config",
                                           "cachedir", "builddir", "image_name", "size",
                                           "bootloader_url", "bootloader_revision"])

class BuildConfig(_BuildConfig):
    """Settings for one image build

    Immutable once created, build a new one with _replace() to change it.
    """
    __slots__ = ()

    @property
    def image_path(self):
        return joinpaths(self.builddir, self.image_name)

    @property
    def mount_dir(self):
        return joinpaths(self.builddir, "mnt")

    @property
    def package_dir(self):
        return joinpaths(self.cachedir, "limine")


def parse_size(size):
    """Convert a size string to bytes

    :param size: Size in bytes, or with a K, M or G suffix (powers of 1024)
    :type size: str or int
    :returns: The size in bytes
    :rtype: int
    :raises: ValueError if the size cannot be parsed or isn't positive
    """
    if isinstance(size, int):
        value = size
    else:
        m = re.match(r"^\s*(\d+)\s*([KMG]?)i?B?\s*$", str(size), re.IGNORECASE)
        if not m:
            raise ValueError("Invalid size: %s" % size)
        mult = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}[m.group(2).upper()]
        value = int(m.group(1)) * mult
    if value <= 0:
        raise ValueError("Size must be larger than 0: %s" % size)
    return value


def configure(conf_file=DEFAULT_CONF):
    """Read the configuration file, on top of the defaults

    :param str conf_file: Path to the config file, it is ok if it doesn't exist
    :returns: The configuration
    :rtype: configparser.ConfigParser
    """
    conf = configparser.ConfigParser()

    # set defaults
    conf.add_section("aeroimage")
    conf.set("aeroimage", "debug", "0")
    conf.set("aeroimage", "logdir", "logs")

    conf.add_section("image")
    conf.set("image", "name", "aero.img")
    conf.set("image", "size", "64M")
    conf.set("image", "builddir", "build")
    conf.set("image", "kernel", "src/target/x86_64-aero_os/debug/aero_kernel")
    conf.set("image", "bootloader_config", "src/.cargo/limine.cfg")

    conf.add_section("bootloader")
    conf.set("bootloader", "url", LIMINE_URL)
    conf.set("bootloader", "revision", LIMINE_REVISION)
    conf.set("bootloader", "cachedir", "bundled")

    # read the config file
    if os.path.isfile(conf_file):
        logger.debug("reading config from %s", conf_file)
        conf.read(conf_file)

    return conf


def make_build_config(conf, boot_mode, kernel=None, bootloader_config=None, builddir=None,
                      cachedir=None, size=None):
    """Combine the configuration file settings with command line overrides

    :param conf: The configuration returned by configure()
    :type conf: configparser.ConfigParser
    :param boot_mode: BIOS or EFI
    :type boot_mode: BootMode
    :returns: The settings for the build
    :rtype: BuildConfig

    Arguments that are None use the value from conf. Paths are made absolute.
    """
    return BuildConfig(boot_mode=BootMode(boot_mode),
                       kernel=os.path.abspath(kernel or conf.get("image", "kernel")),
                       bootloader_config=os.path.abspath(bootloader_config or conf.get("image", "bootloader_config")),
                       cachedir=os.path.abspath(cachedir or conf.get("bootloader", "cachedir")),
                       builddir=os.path.abspath(builddir or conf.get("image", "builddir")),
                       image_name=conf.get("image", "name"),
                       size=parse_size(size or conf.get("image", "size")),
                       bootloader_url=conf.get("bootloader", "url"),
                       bootloader_revision=conf.get("bootloader", "revision"))
