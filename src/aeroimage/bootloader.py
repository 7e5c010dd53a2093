#
# bootloader.py - fetching and installing the Limine bootloader
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
"""
The bootloader package is a binary release branch of Limine, cloned once into
the cache directory and reused by every later build. It provides the stage
binary copied into /boot, the EFI application, and the installer that writes
the boot code into the raw image.
"""
import logging
logger = logging.getLogger("aeroimage.bootloader")

import os
from subprocess import CalledProcessError

from aeroimage.errors import FetchError, InstallError
from aeroimage.executils import runcmd
from aeroimage.sysutils import joinpaths, remove


class LiminePackage(object):
    """Paths of the files in a Limine binary release"""
    STAGE_BINARY = "limine.sys"
    EFI_APPLICATION = "BOOTX64.EFI"
    INSTALLER = "limine-install-linux-x86_64"

    def __init__(self, path):
        self.path = path

    @property
    def stage_binary(self):
        return joinpaths(self.path, self.STAGE_BINARY)

    @property
    def efi_application(self):
        return joinpaths(self.path, self.EFI_APPLICATION)

    @property
    def installer(self):
        return joinpaths(self.path, self.INSTALLER)

    def __repr__(self):
        return "<LiminePackage %s>" % self.path


def ensure_package(package_dir, url, revision):
    """Make sure the bootloader package is present, cloning it if needed

    :param str package_dir: Directory to clone the package into
    :param str url: git url of the package
    :param str revision: Branch or tag to clone
    :returns: The package
    :rtype: LiminePackage
    :raises: FetchError if the clone fails

    The presence of package_dir means it has already been fetched. A failed
    clone is removed so that the next run tries again.
    """
    if os.path.isdir(package_dir):
        logger.debug("using cached bootloader package in %s", package_dir)
        return LiminePackage(package_dir)

    parent = os.path.dirname(package_dir)
    try:
        if parent and not os.path.isdir(parent):
            os.makedirs(parent)
    except OSError as e:
        raise FetchError("Unable to create %s: %s" % (parent, e.strerror), package_dir) from e

    logger.info("fetching %s (%s) into %s", url, revision, package_dir)
    try:
        runcmd(["git", "clone", "--branch=%s" % revision, "--depth=1", url, package_dir])
    except (CalledProcessError, OSError) as e:
        logger.error("Failed to clone %s: %s", url, getattr(e, "output", e))
        if os.path.lexists(package_dir):
            remove(package_dir)
        raise FetchError("Failed to clone %s at %s" % (url, revision), package_dir) from e

    return LiminePackage(package_dir)


def install_bootloader(image_path, installer):
    """Write the bootloader's boot code into the raw image

    :param str image_path: The whole disk image, not a partition
    :param str installer: Path to the installer executable
    :raises: InstallError if the installer is missing or fails

    The image must not be mounted or attached to a loop device.
    """
    if not os.path.isfile(installer):
        raise InstallError("Missing bootloader installer %s" % installer, image_path)
    if not os.access(installer, os.X_OK):
        raise InstallError("Bootloader installer %s is not executable" % installer, image_path)

    try:
        runcmd([installer, image_path])
    except (CalledProcessError, OSError) as e:
        logger.error("%s failed: %s", installer, getattr(e, "output", e))
        raise InstallError("Bootloader installation failed, the image is not bootable", image_path) from e
