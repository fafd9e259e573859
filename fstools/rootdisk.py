"""An overlay volume placed behind the squashfs image on the root disk."""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import stat
import struct
from contextlib import suppress
from dataclasses import dataclass, field

from .common import block_file_identify, block_volume_format
from .volume import Driver, FsType, Volume, VolumeError, VolumeType, register_driver

log = logging.getLogger(__name__)

ROOTDEV_OVERLAY_ALIGN = 64 * 1024
SQUASHFS_MAGIC = b"hsqs"
LOOP_PREFIX = "/dev/loop"

LOOP_SET_FD = 0x4C00
LOOP_CLR_FD = 0x4C01
LOOP_SET_STATUS64 = 0x4C04
LOOP_GET_STATUS64 = 0x4C05
LO_FLAGS_AUTOCLEAR = 4

_LOOP_DEVICES = 8
_SQUASHFS_SUPER = struct.Struct("<4s36xQ")
_LOOP_INFO64 = struct.Struct("=5Q4I64s64s32s2Q")
_LO_OFFSET = 3
_LO_FILE_NAME = 9


def get_blockdev(dev: int, directory: str = "/dev") -> str | None:
    """Return the block device node in ``directory`` with device number ``dev``."""
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for name in names:
        path = f"{directory}/{name}"
        try:
            st = os.lstat(path)
        except OSError:
            continue
        if stat.S_ISBLK(st.st_mode) and st.st_rdev == dev:
            return path
    return None


def get_rootdev(path: str) -> str | None:
    """Return the block device that holds ``path``, or that ``path`` is."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    return get_blockdev(st.st_rdev if stat.S_ISBLK(st.st_mode) else st.st_dev)


def align_overlay_offset(bytes_used: int) -> int:
    """Round ``bytes_used`` up to the overlay alignment."""
    return (bytes_used + ROOTDEV_OVERLAY_ALIGN - 1) & ~(ROOTDEV_OVERLAY_ALIGN - 1)


def _squashfs_bytes_used(path: str) -> int | None:
    try:
        with open(path, "rb") as f:
            data = f.read(_SQUASHFS_SUPER.size)
    except OSError:
        return None
    if len(data) != _SQUASHFS_SUPER.size:
        return None
    magic, bytes_used = _SQUASHFS_SUPER.unpack(data)
    if magic != SQUASHFS_MAGIC:
        return None
    return bytes_used


@dataclass(eq=False)
class RootdiskVolume(Volume):
    """The space after the squashfs image, reached through a loop device."""

    rootdev: str = ""
    offset: int = 0
    loop_name: str = ""
    loop_prefix: str = LOOP_PREFIX
    _loop_fd: int = field(default=-1, repr=False)

    def _attach(self, fd: int, backing: int) -> bool:
        try:
            fcntl.ioctl(fd, LOOP_SET_FD, backing)
        except OSError:
            return False
        info = _LOOP_INFO64.pack(
            0, 0, 0, self.offset, 0, 0, 0, 0, LO_FLAGS_AUTOCLEAR,
            os.fsencode(self.rootdev)[:63], b"", b"", 0, 0,
        )
        try:
            fcntl.ioctl(fd, LOOP_SET_STATUS64, info)
        except OSError:
            with suppress(OSError):
                fcntl.ioctl(fd, LOOP_CLR_FD, 0)
            return False
        return True

    def _try_loop(self, fd: int, backing: int) -> bool:
        try:
            info = fcntl.ioctl(fd, LOOP_GET_STATUS64, bytes(_LOOP_INFO64.size))
        except OSError as exc:
            if exc.errno == errno.ENXIO and self._attach(fd, backing):
                # kept open so that autoclear does not release the device early
                self._loop_fd = fd
                return True
            os.close(fd)
            return False
        os.close(fd)
        fields = _LOOP_INFO64.unpack(info)
        file_name = fields[_LO_FILE_NAME].split(b"\0", 1)[0]
        return file_name == os.fsencode(self.rootdev) and fields[_LO_OFFSET] == self.offset

    def _create_loop(self) -> None:
        try:
            backing = os.open(self.rootdev, os.O_RDWR)
        except OSError as exc:
            raise VolumeError(f"cannot open {self.rootdev}: {exc}") from exc
        try:
            for index in range(_LOOP_DEVICES):
                name = f"{self.loop_prefix}{index}"
                try:
                    fd = os.open(name, os.O_RDWR)
                except OSError:
                    continue
                if self._try_loop(fd, backing):
                    self.loop_name = name
                    return
        finally:
            os.close(backing)
        self.loop_name = ""
        raise VolumeError("no loop device available")

    def init(self) -> None:
        if not self.loop_name:
            try:
                self._create_loop()
            except VolumeError:
                log.error("unable to create loop device")
                raise
        self.type = VolumeType.BLOCKDEV
        self.blk = self.loop_name
        block_volume_format(self, self.offset, self.rootdev)

    def identify(self) -> FsType:
        try:
            with open(self.rootdev, "rb") as f:
                return block_file_identify(f, self.offset)
        except OSError:
            return FsType.NONE


class RootdiskDriver(Driver):
    """Provides rootfs_data behind a squashfs root filesystem on a disk."""

    name = "rootdisk"
    priority = 0

    def __init__(self, rootdev: str | None = None) -> None:
        self.rootdev = rootdev

    def find(self, name: str) -> RootdiskVolume | None:
        if name != "rootfs_data":
            return None
        if self.rootdev is None:
            self.rootdev = get_rootdev("/") or get_rootdev("/rom")
        if self.rootdev is None:
            return None
        bytes_used = _squashfs_bytes_used(self.rootdev)
        if bytes_used is None:
            return None
        return RootdiskVolume(
            name="rootfs_data",
            driver=self,
            rootdev=self.rootdev,
            offset=align_overlay_offset(bytes_used),
        )


register_driver(RootdiskDriver())