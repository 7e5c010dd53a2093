# imgutils.py - utility functions for building raw disk images
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
logger = logging.getLogger("aeroimage.imgutils")

import os
import time
from collections import namedtuple
from subprocess import CalledProcessError

import parted

from aeroimage.config import BootMode
from aeroimage.errors import AllocationError, PartitionError, LoopbackError
from aeroimage.errors import FormatError, MountError
from aeroimage.executils import execWithCapture, runcmd, runcmd_output

SECTOR_SIZE = 512

# First sector of the partition, leaves room for the protective MBR,
# the GPT header and the partition entry array.
PARTITION_START = 2048

# Backup GPT header plus its 32 sectors of partition entries
GPT_BACKUP_SECTORS = 33

PARTED_ERRORS = (parted.PartedException, parted.IOException, parted.DiskException,
                 parted.DiskLabelException, parted.PartitionException,
                 parted.ConstraintException, parted.GeometryException,
                 parted.DeviceException)

RawImage = namedtuple("RawImage", ["path", "size"])
Partition = namedtuple("Partition", ["number", "start", "end"])
PartitionTable = namedtuple("PartitionTable", ["label", "partitions"])

######## Image allocation ################################################

def round_to_blocks(size, blocksize):
    '''If size isn't a multiple of blocksize, round up to the next multiple'''
    diff = size % blocksize
    if diff or not size:
        size += blocksize - diff
    return size

def mksparse(outfile, size, blocksize=SECTOR_SIZE):
    '''Create a sparse, zero filled file of the given size.

    Any existing file is truncated first. The size is rounded up to a whole
    number of blocks. Returns a RawImage.
    raises AllocationError if the file cannot be created.'''
    size = round_to_blocks(size, blocksize)
    try:
        with open(outfile, "wb") as fobj:
            os.ftruncate(fobj.fileno(), size)
    except OSError as e:
        raise AllocationError("Unable to create %d byte image: %s" % (size, e.strerror), outfile) from e
    logger.debug("created %s, %d bytes", outfile, size)
    return RawImage(outfile, size)

######## Partitioning ####################################################

def read_partitions(outfile):
    '''Return the PartitionTable of a partitioned image file.
    raises PartitionError if there is no label or parted cannot read it.'''
    device = None
    try:
        device = parted.getDevice(outfile)
        disk = parted.newDisk(device)
        return PartitionTable(disk.type, [Partition(p.number, p.geometry.start, p.geometry.end)
                                          for p in disk.partitions])
    except PARTED_ERRORS as e:
        raise PartitionError("Unable to read partition table: %s" % e, outfile) from e
    finally:
        if device:
            device.removeFromCache()

def mkgpt(outfile, start=PARTITION_START):
    '''Write a GPT label with one partition from start to the last usable sector.

    Returns the PartitionTable read back from the image.
    raises PartitionError if the image is too small or parted fails.'''
    device = None
    try:
        device = parted.getDevice(outfile)
        min_length = start + 1 + GPT_BACKUP_SECTORS
        if device.length < min_length:
            raise PartitionError("Image has %d sectors, a GPT partition at sector %d needs at least %d"
                                 % (device.length, start, min_length), outfile)

        disk = parted.freshDisk(device, "gpt")
        end = disk.getFreeSpaceRegions()[-1].end
        geo = parted.Geometry(device=device, start=start, end=end)
        part = parted.Partition(disk=disk, type=parted.PARTITION_NORMAL, geometry=geo)
        disk.addPartition(partition=part, constraint=parted.Constraint(exactGeom=geo))
        disk.commit()
        logger.debug("partition 1 of %s: sectors %d-%d", outfile, start, end)
    except PARTED_ERRORS as e:
        raise PartitionError("parted failed: %s" % e, outfile) from e
    finally:
        if device:
            device.removeFromCache()
    os.sync()

    return read_partitions(outfile)

######## Loop devices ####################################################

def partition_device(loop_dev, number=1):
    '''Return the device node for a partition of a loop device'''
    return "%sp%d" % (loop_dev, number)

def get_loop_devices(path):
    '''Return a list of the loop devices associated with the path.'''
    # /dev/loop0: [2049]:1234 (/path/to/aero.img)
    buf = runcmd_output(["losetup", "-j", os.path.abspath(path)])
    return [line.split(":")[0] for line in buf.splitlines() if line.startswith("/dev/")]

def loop_waitfor(loop_dev, outfile, retries=5):
    """Make sure the loop device is attached and its partition node exists.

    losetup can return before udev has created /dev/loopXp1, which would
    make mkfs fail. Raise LoopbackError if it isn't setup after retries.
    """
    part_dev = partition_device(loop_dev)
    for _x in range(0, retries):
        runcmd(["udevadm", "settle", "--timeout", "300"])
        if loop_dev in get_loop_devices(outfile) and os.path.exists(part_dev):
            return part_dev

        # If this really is a race, give it some time to settle down
        time.sleep(1)

    raise LoopbackError("Partition device %s did not appear" % part_dev, loop_dev)

def loop_attach(outfile):
    """Attach the image to the next free loop device, scanning for partitions.

    Returns the loop device name. If the partition device never shows up the
    loop device is detached again before LoopbackError is raised.
    """
    try:
        dev = runcmd_output(["losetup", "--find", "--show", "--partscan", outfile]).strip()
    except (CalledProcessError, OSError) as e:
        raise LoopbackError("losetup failed: %s" % getattr(e, "output", e), outfile) from e
    if not dev:
        raise LoopbackError("losetup did not return a loop device", outfile)

    try:
        loop_waitfor(dev, outfile)
    except (LoopbackError, CalledProcessError, OSError) as e:
        logger.error("loop_attach failed, detaching %s", dev)
        try:
            loop_detach(dev)
        except LoopbackError as de:
            logger.warning("%s", de)
        if isinstance(e, LoopbackError):
            raise
        raise LoopbackError("Partition device did not appear: %s" % getattr(e, "output", e), dev) from e
    logger.debug("attached %s to %s", outfile, dev)
    return dev

def loop_detach(loopdev):
    '''Detach the given loop device.
    raises LoopbackError if losetup fails.'''
    try:
        runcmd(["losetup", "--detach", loopdev])
    except (CalledProcessError, OSError) as e:
        raise LoopbackError("Unable to detach: %s" % getattr(e, "output", e), loopdev) from e

######## Filesystems #####################################################

MKFS_COMMANDS = {
    "ext2":  ["mkfs.ext2", "-q"],
    "fat32": ["mkfs.fat", "-F", "32"],
}

def fstype_for_mode(boot_mode):
    '''BIOS boots from ext2, UEFI firmware needs FAT32'''
    if BootMode(boot_mode) == BootMode.EFI:
        return "fat32"
    return "ext2"

def mkfs(dev, fstype, label=""):
    '''Create a filesystem of type fstype ("ext2" or "fat32") on dev.
    raises FormatError if the device is missing or mkfs fails.'''
    if fstype not in MKFS_COMMANDS:
        raise FormatError("Unknown filesystem type %s" % fstype, dev)
    if not os.path.exists(dev):
        raise FormatError("No such device", dev)

    cmd = list(MKFS_COMMANDS[fstype])
    if label:
        cmd += ["-n" if fstype == "fat32" else "-L", label]
    if fstype == "fat32" and 'SOURCE_DATE_EPOCH' in os.environ:
        cmd += ["-i", "{:x}".format(int(os.environ['SOURCE_DATE_EPOCH']) & 0xffffffff)]
    cmd += [dev]
    try:
        runcmd(cmd)
    except (CalledProcessError, OSError) as e:
        logger.error("mkfs exited with an error: %s", getattr(e, "output", e))
        raise FormatError("%s failed" % cmd[0], dev) from e

######## Mounting ########################################################

def mount(dev, mnt, opts=""):
    '''Mount the given device at the given mountpoint, using the given opts.
    opts should be a comma-separated string of mount options.
    The mountpoint is created if needed, and must be empty.
    raises MountError if mount fails.'''
    try:
        if not os.path.isdir(mnt):
            os.makedirs(mnt)
        if os.listdir(mnt):
            raise MountError("Mountpoint is not empty", mnt)
    except OSError as e:
        raise MountError("Unable to create mountpoint: %s" % e.strerror, mnt) from e
    cmd = ["mount"]
    if opts:
        cmd += ["-o", opts]
    cmd += [dev, mnt]
    try:
        runcmd(cmd)
    except (CalledProcessError, OSError) as e:
        raise MountError("Unable to mount %s: %s" % (dev, getattr(e, "output", e)), mnt) from e
    return mnt

def umount(mnt, lazy=False, maxretry=3, retrysleep=1.0):
    '''Flush and unmount the given mountpoint. If lazy is True, do a lazy umount (-l).
    raises MountError if umount still fails after maxretry tries.'''
    cmd = ["umount"]
    if lazy: cmd += ["-l"]
    cmd += [mnt]
    try:
        runcmd(["sync"])
    except (CalledProcessError, OSError) as e:
        raise MountError("sync failed: %s" % getattr(e, "output", e), mnt) from e
    count = 0
    while True:
        try:
            runcmd(cmd)
        except OSError as e:
            raise MountError("Unable to run umount: %s" % e.strerror, mnt) from e
        except CalledProcessError as e:
            count += 1
            if count >= maxretry:
                raise MountError("Unable to unmount: %s" % e.output, mnt) from e
            logger.warning("failed to unmount %s. retrying (%d/%d)...",
                           mnt, count, maxretry)
            if logger.getEffectiveLevel() <= logging.DEBUG:
                try:
                    fuser = execWithCapture("fuser", ["-vm", mnt])
                    logger.debug("fuser -vm:\n%s\n", fuser)
                except OSError as fe:
                    logger.debug("fuser failed: %s", fe)
            time.sleep(retrysleep)
        else:
            break
