#
# cmdline.py
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
log = logging.getLogger("aero-mkimage")

import os
import sys
import argparse

from aeroimage import vernum, setup_logging
from aeroimage.config import BootMode, DEFAULT_CONF, configure, make_build_config
from aeroimage.errors import AeroImageError
from aeroimage.pipeline import ImageBuilder
from aeroimage.sysutils import joinpaths, build_lock

version = "{0}-{1}".format(os.path.basename(sys.argv[0]), vernum)

def aeroimage_parser():
    """ Return the ArgumentParser for aero-mkimage"""

    parser = argparse.ArgumentParser(description="Create a bootable Aero disk image")

    mode = parser.add_argument_group("boot mode (default: --bios)")
    mode_excl = mode.add_mutually_exclusive_group()
    mode_excl.add_argument("-b", "--bios", action="store_const", const=BootMode.BIOS,
                           dest="boot_mode", help="Build an ext2 image booted by the BIOS")
    mode_excl.add_argument("-e", "--efi", action="store_const", const=BootMode.EFI,
                           dest="boot_mode", help="Build a FAT32 image booted by UEFI firmware")
    parser.set_defaults(boot_mode=BootMode.BIOS)

    optional = parser.add_argument_group("optional arguments")
    optional.add_argument("-c", "--config", default=DEFAULT_CONF,
                          help="config file", metavar="CONFIGFILE")
    optional.add_argument("--kernel", default=None, type=os.path.abspath,
                          help="Path to the kernel executable")
    optional.add_argument("--bootloader-config", default=None, type=os.path.abspath,
                          help="Path to the limine.cfg to copy into the image")
    optional.add_argument("--builddir", default=None, type=os.path.abspath,
                          help="Build directory, it is removed and recreated on every run")
    optional.add_argument("--cachedir", default=None, type=os.path.abspath,
                          help="Directory the bootloader package is cached in")
    optional.add_argument("--size", default=None,
                          help="Size of the image, in bytes or with a K, M or G suffix. Defaults to 64M")
    optional.add_argument("--logfile", default=None, type=os.path.abspath,
                          help="Path to logfile, default is under the configured logdir")
    optional.add_argument("--debug", action="store_true", default=False,
                          help="Log debug output to the console")

    # add the show version option
    parser.add_argument("-V", help="show program's version number and exit",
                      action="version", version=version)

    return parser

def main(argv=None):
    parser = aeroimage_parser()
    opts = parser.parse_args(argv)

    conf = configure(opts.config)
    try:
        cfg = make_build_config(conf, opts.boot_mode, kernel=opts.kernel,
                                bootloader_config=opts.bootloader_config,
                                builddir=opts.builddir, cachedir=opts.cachedir,
                                size=opts.size)
    except ValueError as e:
        parser.error(str(e))

    logfile = opts.logfile or joinpaths(os.path.abspath(conf.get("aeroimage", "logdir")), "aero-mkimage.log")
    setup_logging(logfile, log)
    if opts.debug or conf.getboolean("aeroimage", "debug"):
        for h in logging.getLogger("aeroimage").handlers:
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
                h.setLevel(logging.DEBUG)

    log.debug("%s", version)
    log.debug("build configuration: %s", cfg)

    # do we have root privileges?
    if not os.geteuid() == 0:
        log.critical("no root privileges")
        return 1

    if not os.path.isdir(cfg.cachedir):
        os.makedirs(cfg.cachedir)
    try:
        with build_lock(cfg.cachedir + ".lock"):
            ImageBuilder(cfg).run()
    except BlockingIOError:
        log.critical("Another image build is already running (%s.lock)", cfg.cachedir)
        return 1
    except AeroImageError as e:
        log.error("%s failed: %s", type(e).__name__, e)
        return e.exit_code

    log.info("%s image is ready: %s", cfg.boot_mode.name, cfg.image_path)
    return 0

if __name__ == '__main__':
    sys.exit(main())
