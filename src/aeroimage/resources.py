#
# resources.py - scoped handling of loop devices and mounts
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
logger = logging.getLogger("aeroimage.resources")

from aeroimage.errors import CleanupWarning
from aeroimage.imgutils import loop_attach, loop_detach, partition_device, mount, umount

######## Execution contexts - use with the 'with' statement ##############

class ResourceGuard(object):
    """Base class for a host resource that must always be released

    Subclasses implement acquire(), returning the handle, and release().
    open() and close() make sure release() only runs after a successful
    acquire() and only until it has succeeded once.
    """
    def __init__(self):
        self.handle = None
        self.released = False

    def acquire(self):
        raise NotImplementedError

    def release(self):
        raise NotImplementedError

    @property
    def active(self):
        return self.handle is not None and not self.released

    def open(self):
        self.handle = self.acquire()
        return self.handle

    def close(self, strict=False):
        """Release the resource if it is still held

        :param bool strict: Raise release errors instead of returning them
        :returns: None, or a CleanupWarning if release failed
        :rtype: CleanupWarning

        A failed release leaves the resource active so it can be tried again.
        """
        if not self.active:
            return None
        try:
            self.release()
        except Exception as e:
            if strict:
                raise
            warning = CleanupWarning(self.handle, e)
            logger.warning("%s", warning)
            return warning
        self.released = True
        return None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_value, tracebk):
        # Errors from the with block are more important than release errors
        self.close(strict=exc_type is None)
        return False

    def __repr__(self):
        return "<%s %s>" % (self.__class__.__name__, self.handle)


class LoopDev(ResourceGuard):
    """Attach an image file to a loop device, with partition scanning"""
    def __init__(self, filename, attach=loop_attach, detach=loop_detach):
        super().__init__()
        self.filename = filename
        (self._attach, self._detach) = (attach, detach)

    def acquire(self):
        return self._attach(self.filename)

    def release(self):
        self._detach(self.handle)

    @property
    def partition(self):
        """Device node of the first partition"""
        return partition_device(self.handle)


class Mount(ResourceGuard):
    def __init__(self, dev, mnt, opts="", do_mount=mount, do_umount=umount):
        super().__init__()
        (self.dev, self.mnt, self.opts) = (dev, mnt, opts)
        (self._mount, self._umount) = (do_mount, do_umount)

    def acquire(self):
        return self._mount(self.dev, self.mnt, self.opts)

    def release(self):
        self._umount(self.handle)


class ResourceArena(object):
    """Track every resource acquired during a build

    Resources are released in the reverse order of acquisition by
    release_all(), which keeps going when one of them fails to release.
    """
    def __init__(self):
        self._guards = []
        self.warnings = []

    def acquire(self, guard):
        """Open the guard and keep track of it, returns the handle"""
        handle = guard.open()
        self._guards.append(guard)
        logger.debug("acquired %r", guard)
        return handle

    def release(self, guard):
        """Release one resource on the normal path, raising any error"""
        guard.close(strict=True)
        self._guards.remove(guard)
        logger.debug("released %r", guard)

    @property
    def active(self):
        return [g for g in self._guards if g.active]

    def release_all(self):
        """Release everything still held, newest first

        :returns: The CleanupWarnings from resources that failed to release
        :rtype: list
        """
        warnings = []
        while self._guards:
            guard = self._guards.pop()
            logger.debug("releasing %r", guard)
            warning = guard.close()
            if warning:
                warnings.append(warning)
        self.warnings.extend(warnings)
        return warnings

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tracebk):
        self.release_all()
        return False
