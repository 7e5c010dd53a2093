#
# errors.py - exceptions raised by the image build steps
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

class AeroImageError(Exception):
    """Base class for the fatal errors of a build step

    :param str msg: Description of the failure
    :param str resource: The image, device or directory the step was working on

    step is filled in by the pipeline with the name of the state it was
    trying to reach when the error was raised.
    """
    exit_code = 1

    def __init__(self, msg, resource=None):
        super().__init__(msg)
        self.msg = msg
        self.resource = resource
        self.step = None

    def __str__(self):
        s = self.msg
        if self.resource:
            s = "%s (%s)" % (s, self.resource)
        if self.step:
            s = "%s: %s" % (self.step, s)
        return s

# Cloning the bootloader package failed
class FetchError(AeroImageError):
    exit_code = 2

# The raw image file could not be created
class AllocationError(AeroImageError):
    exit_code = 3

# Writing the GPT label failed, or the image is too small for one
class PartitionError(AeroImageError):
    exit_code = 4

# losetup failed, or the partition device never appeared
class LoopbackError(AeroImageError):
    exit_code = 5

# mkfs failed or the device was not recognized
class FormatError(AeroImageError):
    exit_code = 6

# mount or umount of the partition failed
class MountError(AeroImageError):
    exit_code = 7

# A file that should be copied into the image is missing
class StageError(AeroImageError):
    exit_code = 8

# The bootloader installer failed, the image is not bootable
class InstallError(AeroImageError):
    exit_code = 9


class CleanupWarning(UserWarning):
    """A resource could not be released while cleaning up

    These are logged and collected, never raised.
    """
    def __init__(self, resource, reason):
        super().__init__("failed to release %s: %s" % (resource, reason))
        self.resource = resource
        self.reason = reason
