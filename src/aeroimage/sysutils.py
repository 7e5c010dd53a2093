#
# sysutils.py
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

__all__ = ["joinpaths", "cpfile", "remove", "build_lock"]

import os
import shutil
import fcntl
from contextlib import contextmanager


def joinpaths(*args, **kwargs):
    path = os.path.sep.join(args)

    if kwargs.get("follow_symlinks"):
        return os.path.realpath(path)
    else:
        return path


def cpfile(src, dst, preserve=True):
    """Copy a file, returning the destination path

    When preserve is False only the data is copied, for filesystems like FAT
    that cannot store modes or ownership.
    """
    if os.path.isdir(dst):
        dst = joinpaths(dst, os.path.basename(src))
    if preserve:
        shutil.copy2(src, dst)
    else:
        shutil.copyfile(src, dst)
    return dst


def remove(target):
    if os.path.isdir(target) and not os.path.islink(target):
        shutil.rmtree(target)
    else:
        os.unlink(target)


@contextmanager
def build_lock(path):
    """Hold an exclusive lock on path for the duration of the with block

    :param str path: Lock file, created if it doesn't exist
    :raises: BlockingIOError if another process holds the lock
    """
    fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        try:
            yield path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
