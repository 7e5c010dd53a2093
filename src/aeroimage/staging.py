#
# staging.py - copy the kernel and bootloader files into the image
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
logger = logging.getLogger("aeroimage.staging")

import os
from os.path import join, dirname

from aeroimage.config import BootMode
from aeroimage.errors import StageError
from aeroimage.sysutils import cpfile

KERNEL_PATH = "boot/aero.elf"
BOOTLOADER_CONFIG_PATH = "limine.cfg"
STAGE_BINARY_PATH = "boot/limine.sys"
EFI_APPLICATION_PATH = "EFI/BOOT/BOOTX64.EFI"

def boot_grafts(boot_mode, kernel, bootloader_config, package):
    """Return the files to copy into the image

    :param BootMode boot_mode: BIOS or EFI
    :param str kernel: Path to the kernel executable
    :param str bootloader_config: Path to limine.cfg
    :param package: The bootloader package
    :type package: LiminePackage
    :returns: {"path/in/image": "local/file"}
    :rtype: dict
    """
    grafts = {KERNEL_PATH: kernel,
              BOOTLOADER_CONFIG_PATH: bootloader_config,
              STAGE_BINARY_PATH: package.stage_binary}
    if BootMode(boot_mode) == BootMode.EFI:
        grafts[EFI_APPLICATION_PATH] = package.efi_application
    return grafts

def do_grafts(grafts, dest, preserve=True):
    '''Copy each of the files listed in grafts into dest, creating the
    leading directories.'''
    for imgpath, filename in sorted(grafts.items()):
        targetdir = join(dest, dirname(imgpath))
        if not os.path.isdir(targetdir):
            os.makedirs(targetdir)
        logger.debug("%s -> %s", filename, imgpath)
        cpfile(filename, join(dest, imgpath), preserve)

def stage_files(mount_dir, boot_mode, kernel, bootloader_config, package):
    """Populate the mounted filesystem

    :raises: StageError if a source file is missing or cannot be copied

    Everything is checked before anything is copied. FAT cannot hold
    file modes so only the contents are copied for EFI images.
    """
    grafts = boot_grafts(boot_mode, kernel, bootloader_config, package)
    missing = sorted(f for f in grafts.values() if not os.path.isfile(f))
    if missing:
        raise StageError("Missing required files: %s" % ", ".join(missing), mount_dir)

    try:
        os.makedirs(join(mount_dir, "boot"), exist_ok=True)
        do_grafts(grafts, mount_dir, preserve=BootMode(boot_mode) == BootMode.BIOS)
    except OSError as e:
        raise StageError("Copying files failed: %s" % e, mount_dir) from e

    # Make absolutely sure that the data has been written
    os.sync()
    return sorted(grafts)
