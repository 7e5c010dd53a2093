#
# pipeline.py - build a bootable raw disk image
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
logger = logging.getLogger("aeroimage.pipeline")

import os
from collections import namedtuple
from enum import Enum
from subprocess import CalledProcessError

from aeroimage.bootloader import ensure_package, install_bootloader
from aeroimage.errors import AeroImageError, FetchError, AllocationError, PartitionError, LoopbackError
from aeroimage.errors import FormatError, MountError, StageError, InstallError
from aeroimage.errors import CleanupWarning
from aeroimage.imgutils import mksparse, mkgpt, loop_attach, loop_detach, get_loop_devices
from aeroimage.imgutils import mkfs, fstype_for_mode, mount, umount
from aeroimage.resources import LoopDev, Mount, ResourceArena
from aeroimage.staging import stage_files
from aeroimage.sysutils import remove


class BuildState(Enum):
    INIT = "Init"
    PACKAGE_READY = "PackageReady"
    ALLOCATED = "Allocated"
    PARTITIONED = "Partitioned"
    LOOP_ATTACHED = "LoopAttached"
    FORMATTED = "Formatted"
    MOUNTED = "Mounted"
    STAGED = "Staged"
    UNMOUNTED = "Unmounted"
    LOOP_DETACHED = "LoopDetached"
    INSTALLED = "Installed"
    FAILED = "Failed"


# The privileged operations, each one a callable raising its own error type
BuildOps = namedtuple("BuildOps", ["fetch", "allocate", "partition", "attach", "detach",
                                   "find_loops", "format", "mount", "umount", "stage",
                                   "install"])

DEFAULT_OPS = BuildOps(fetch=ensure_package,
                       allocate=mksparse,
                       partition=mkgpt,
                       attach=loop_attach,
                       detach=loop_detach,
                       find_loops=get_loop_devices,
                       format=mkfs,
                       mount=mount,
                       umount=umount,
                       stage=stage_files,
                       install=install_bootloader)


# Error kind for host errors that escape a step without one
STEP_ERRORS = {BuildState.INIT: AllocationError,
               BuildState.PACKAGE_READY: FetchError,
               BuildState.ALLOCATED: AllocationError,
               BuildState.PARTITIONED: PartitionError,
               BuildState.LOOP_ATTACHED: LoopbackError,
               BuildState.FORMATTED: FormatError,
               BuildState.MOUNTED: MountError,
               BuildState.STAGED: StageError,
               BuildState.UNMOUNTED: MountError,
               BuildState.LOOP_DETACHED: LoopbackError,
               BuildState.INSTALLED: InstallError}


class ImageBuilder(object):
    """Run the image build steps in order

    Each step moves the build to the next BuildState. When a step fails the
    build moves to FAILED, the loop device and mount acquired so far are
    released newest first, and the step's error is raised.

    :param config: The build settings
    :type config: BuildConfig
    :param ops: Replacement privileged operations, for testing
    :type ops: BuildOps
    """
    STEPS = [(BuildState.PACKAGE_READY, "fetch_package"),
             (BuildState.ALLOCATED, "allocate_image"),
             (BuildState.PARTITIONED, "partition_image"),
             (BuildState.LOOP_ATTACHED, "attach_loop"),
             (BuildState.FORMATTED, "format_partition"),
             (BuildState.MOUNTED, "mount_partition"),
             (BuildState.STAGED, "stage_files"),
             (BuildState.UNMOUNTED, "unmount_partition"),
             (BuildState.LOOP_DETACHED, "detach_loop"),
             (BuildState.INSTALLED, "install_bootloader")]

    def __init__(self, config, ops=None):
        self.config = config
        self.ops = ops or DEFAULT_OPS
        self.state = BuildState.INIT
        self.history = [BuildState.INIT]
        self.failed_step = None
        self.arena = ResourceArena()

        self.package = None
        self.image = None
        self.partitions = None
        self.loop = None
        self.mount = None

    @property
    def cleanup_warnings(self):
        return self.arena.warnings

    def _enter(self, state):
        logger.info("%s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def run(self):
        """Build the image

        :returns: Path to the finished image
        :rtype: str
        :raises: AeroImageError subclass of the step that failed
        """
        if self.state != BuildState.INIT:
            raise RuntimeError("An ImageBuilder can only be run once")

        step = BuildState.INIT
        try:
            try:
                self.remove_stale_output()
                for step, method in self.STEPS:
                    getattr(self, method)()
                    self._enter(step)
            except (CalledProcessError, OSError) as e:
                raise STEP_ERRORS[step](str(e), getattr(e, "filename", None)) from e
        except AeroImageError as e:
            e.step = step.value
            logger.error("Image build failed: %s", e)
            raise
        finally:
            if self.state != BuildState.INSTALLED:
                self.failed_step = step
                self._enter(BuildState.FAILED)
                self.arena.release_all()
        logger.info("Image written to %s", self.config.image_path)
        return self.config.image_path

    def _release_stale(self, release, resource):
        try:
            release(resource)
        except Exception as e:
            warning = CleanupWarning(resource, e)
            logger.warning("%s", warning)
            self.arena.warnings.append(warning)

    def remove_stale_output(self):
        """Remove everything left behind by a previous build

        A build that was killed can leave the mount and the loop device
        behind, so those are released before the build directory is removed.
        """
        builddir = self.config.builddir
        if os.path.ismount(self.config.mount_dir):
            logger.info("unmounting stale mount %s", self.config.mount_dir)
            self._release_stale(self.ops.umount, self.config.mount_dir)
            if os.path.ismount(self.config.mount_dir):
                raise AllocationError("Stale mount is still busy, not removing the build directory",
                                      self.config.mount_dir)
        if os.path.exists(self.config.image_path):
            try:
                devs = self.ops.find_loops(self.config.image_path)
            except (CalledProcessError, OSError) as e:
                raise LoopbackError("Unable to list loop devices: %s" % e, self.config.image_path) from e
            for dev in devs:
                logger.info("detaching stale loop device %s", dev)
                self._release_stale(self.ops.detach, dev)

        try:
            if os.path.lexists(builddir):
                logger.info("removing stale build directory %s", builddir)
                remove(builddir)
            os.makedirs(builddir)
        except OSError as e:
            raise AllocationError("Unable to recreate build directory: %s" % e.strerror, builddir) from e

    def fetch_package(self):
        cfg = self.config
        self.package = self.ops.fetch(cfg.package_dir, cfg.bootloader_url, cfg.bootloader_revision)

    def allocate_image(self):
        self.image = self.ops.allocate(self.config.image_path, self.config.size)

    def partition_image(self):
        self.partitions = self.ops.partition(self.config.image_path)

    def attach_loop(self):
        self.loop = LoopDev(self.config.image_path, attach=self.ops.attach, detach=self.ops.detach)
        self.arena.acquire(self.loop)

    def format_partition(self):
        self.ops.format(self.loop.partition, fstype_for_mode(self.config.boot_mode))

    def mount_partition(self):
        self.mount = Mount(self.loop.partition, self.config.mount_dir,
                           do_mount=self.ops.mount, do_umount=self.ops.umount)
        self.arena.acquire(self.mount)

    def stage_files(self):
        cfg = self.config
        self.ops.stage(cfg.mount_dir, cfg.boot_mode, cfg.kernel, cfg.bootloader_config, self.package)

    def unmount_partition(self):
        self.arena.release(self.mount)
        try:
            os.rmdir(self.config.mount_dir)
        except OSError as e:
            logger.warning("Unable to remove %s: %s", self.config.mount_dir, e.strerror)

    def detach_loop(self):
        self.arena.release(self.loop)

    def install_bootloader(self):
        active = self.arena.active
        if active:
            raise InstallError("Image is still in use by %s" % ", ".join(repr(g) for g in active),
                               self.config.image_path)
        self.ops.install(self.config.image_path, self.package.installer)
