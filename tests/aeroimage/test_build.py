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
import os
import tempfile
import unittest

import parted

from ..lib import get_file_magic, mkconfig, mkfakepackage
from aeroimage.config import BootMode
from aeroimage.executils import runcmd_output
from aeroimage.imgutils import get_loop_devices, PARTITION_START
from aeroimage.pipeline import ImageBuilder, BuildState
from aeroimage.resources import LoopDev, Mount
from aeroimage.sysutils import joinpaths

@unittest.skipUnless(os.geteuid() == 0 and not os.path.exists("/.in-container"), "requires root privileges, and no containers")
class BuildImageTest(unittest.TestCase):
    def setUp(self):
        self.work_dir = tempfile.TemporaryDirectory(prefix="aeroimage.test.")
        self.addCleanup(self.work_dir.cleanup)

    def build(self, boot_mode):
        cfg = mkconfig(self.work_dir.name, boot_mode=boot_mode)
        # A cached package means nothing is cloned
        mkfakepackage(cfg.package_dir)
        builder = ImageBuilder(cfg)
        self.assertEqual(builder.run(), cfg.image_path)
        self.assertEqual(builder.state, BuildState.INSTALLED)
        self.assertEqual(builder.cleanup_warnings, [])
        self.assertEqual(get_loop_devices(cfg.image_path), [])
        self.assertFalse(os.path.exists(cfg.mount_dir))
        return cfg

    def check_image(self, cfg, fstype):
        self.assertEqual(os.path.getsize(cfg.image_path), 64 * 1024**2)
        self.assertIn("boot sector", get_file_magic(cfg.image_path))

        dev = parted.getDevice(cfg.image_path)
        try:
            disk = parted.newDisk(dev)
            self.assertEqual(disk.type, "gpt")
            self.assertEqual(len(disk.partitions), 1)
            self.assertEqual(disk.partitions[0].geometry.start, PARTITION_START)
        finally:
            dev.removeFromCache()

        mnt_dir = joinpaths(self.work_dir.name, "check")
        with LoopDev(cfg.image_path) as loop_dev:
            part = loop_dev + "p1"
            self.assertEqual(runcmd_output(["blkid", "-o", "value", "-s", "TYPE", part]).strip(), fstype)
            with Mount(part, mnt_dir, opts="ro"):
                files = []
                for root, _dirs, filenames in os.walk(mnt_dir):
                    files.extend(os.path.relpath(joinpaths(root, f), mnt_dir) for f in filenames)
                with open(joinpaths(mnt_dir, "boot/aero.elf")) as f:
                    self.assertEqual(f.read(), "I AM A FAKE KERNEL")
        return sorted(f for f in files if not f.startswith("lost+found"))

    def test_bios_image(self):
        """Test building a BIOS image"""
        cfg = self.build(BootMode.BIOS)
        files = self.check_image(cfg, "ext2")
        self.assertEqual(files, ["boot/aero.elf", "boot/limine.sys", "limine.cfg"])

    def test_efi_image(self):
        """Test building an EFI image"""
        cfg = self.build(BootMode.EFI)
        files = self.check_image(cfg, "vfat")
        self.assertEqual(files, ["EFI/BOOT/BOOTX64.EFI", "boot/aero.elf", "boot/limine.sys", "limine.cfg"])

    def test_rebuild(self):
        """Test that building again replaces the old image"""
        cfg = self.build(BootMode.EFI)
        cfg = self.build(BootMode.BIOS)
        self.check_image(cfg, "ext2")
