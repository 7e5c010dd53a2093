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
import magic

from aeroimage.bootloader import LiminePackage
from aeroimage.config import BootMode, BuildConfig, LIMINE_URL, LIMINE_REVISION
from aeroimage.imgutils import RawImage, Partition, PartitionTable
from aeroimage.pipeline import BuildOps
from aeroimage.sysutils import joinpaths

def get_file_magic(filename):
    """Get the file type details using libmagic

    Returns "" on failure or a string containing the description of the file
    """
    details = ""
    try:
        ms = magic.open(magic.NONE)
        ms.load()
        details = ms.file(filename)
    finally:
        ms.close()
    return details

def mkfakefile(path, contents, mode=0o644):
    if not os.path.isdir(os.path.dirname(path)):
        os.makedirs(os.path.dirname(path))
    with open(path, "w") as f:
        f.write(contents)
    os.chmod(path, mode)
    return path

def mkfakepackage(package_dir, installer_rc=0):
    """Populate a fake Limine release

    The installer is a shell script that exits with installer_rc.
    """
    pkg = LiminePackage(package_dir)
    mkfakefile(pkg.stage_binary, "I AM A FAKE LIMINE.SYS")
    mkfakefile(pkg.efi_application, "I AM A FAKE BOOTX64.EFI")
    mkfakefile(pkg.installer, "#!/bin/sh\nexit %d\n" % installer_rc, mode=0o755)
    return pkg

def mkfakesources(srcdir):
    """Create a fake kernel and limine.cfg, returns their paths"""
    kernel = mkfakefile(joinpaths(srcdir, "aero_kernel"), "I AM A FAKE KERNEL")
    cfg = mkfakefile(joinpaths(srcdir, "limine.cfg"), "TIMEOUT=0\n:aero\nKERNEL_PATH=boot:///boot/aero.elf\n")
    return kernel, cfg

def mkconfig(workdir, boot_mode=BootMode.BIOS, size=64 * 1024**2):
    """Return a BuildConfig with everything under workdir"""
    kernel, cfg = mkfakesources(joinpaths(workdir, "src"))
    return BuildConfig(boot_mode=boot_mode,
                       kernel=kernel,
                       bootloader_config=cfg,
                       cachedir=joinpaths(workdir, "bundled"),
                       builddir=joinpaths(workdir, "build"),
                       image_name="aero.img",
                       size=size,
                       bootloader_url=LIMINE_URL,
                       bootloader_revision=LIMINE_REVISION)


class FakeOps(object):
    """Stand in for the privileged build operations

    Every call is recorded in self.calls. fail maps an operation name to the
    exception it should raise. The loop devices and mounts that are live are
    tracked so the tests can check what was released.
    """
    LOOP_DEV = "/dev/loop7"

    def __init__(self, fail=None, attached=None):
        self.calls = []
        self.fail = fail or {}
        self.attached = set(attached or [])
        self.mounted = set()
        self.fstype = None
        self.live_at_install = None

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]

    def fetch(self, package_dir, url, revision):
        self._call("fetch")
        return LiminePackage(package_dir)

    def allocate(self, path, size):
        self._call("allocate")
        with open(path, "wb"):
            pass
        return RawImage(path, size)

    def partition(self, path):
        self._call("partition")
        return PartitionTable("gpt", [Partition(1, 2048, 131038)])

    def attach(self, path):
        self._call("attach")
        self.attached.add(self.LOOP_DEV)
        return self.LOOP_DEV

    def detach(self, dev):
        self._call("detach")
        self.attached.discard(dev)

    def find_loops(self, path):
        self._call("find_loops")
        return sorted(self.attached)

    def format(self, dev, fstype):
        self._call("format")
        self.fstype = fstype

    def mount(self, dev, mnt, opts=""):
        self._call("mount")
        os.makedirs(mnt, exist_ok=True)
        self.mounted.add(mnt)
        return mnt

    def umount(self, mnt):
        self._call("umount")
        self.mounted.discard(mnt)

    def stage(self, mnt, boot_mode, kernel, bootloader_config, package):
        self._call("stage")

    def install(self, image_path, installer):
        self.live_at_install = (set(self.mounted), set(self.attached))
        self._call("install")

    def ops(self):
        return BuildOps(fetch=self.fetch, allocate=self.allocate, partition=self.partition,
                        attach=self.attach, detach=self.detach, find_loops=self.find_loops,
                        format=self.format, mount=self.mount, umount=self.umount,
                        stage=self.stage, install=self.install)
