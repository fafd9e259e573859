"""Volumes on raw MTD flash partitions."""

from __future__ import annotations

import array
import fcntl
import logging
import os
import re
import struct
from dataclasses import dataclass

from .volume import Driver, FsType, Volume, VolumeError, VolumeType, register_driver

log = logging.getLogger(__name__)

PROC_MTD = "/proc/mtd"

_IOC_WRITE = 1
_IOC_READ = 2


def _ioc(direction: int, nr: int, size: int) -> int:
    return (direction << 30) | (size << 16) | (ord("M") << 8) | nr


_MTD_INFO = struct.Struct("=B3xIIIIIQ")
_ERASE_INFO = struct.Struct("=II")
_OOB_BUF = struct.Struct("@IIP")

MEMGETINFO = _ioc(_IOC_READ, 1, _MTD_INFO.size)
MEMERASE = _ioc(_IOC_WRITE, 2, _ERASE_INFO.size)
MEMREADOOB = _ioc(_IOC_READ | _IOC_WRITE, 4, _OOB_BUF.size)
MEMUNLOCK = _ioc(_IOC_WRITE, 6, _ERASE_INFO.size)

MTD_NORFLASH = 3
MTD_NANDFLASH = 4
MTD_UBIVOLUME = 7

_MTD_TYPES = {
    MTD_NORFLASH: VolumeType.NORFLASH,
    MTD_NANDFLASH: VolumeType.NANDFLASH,
    MTD_UBIVOLUME: VolumeType.UBIVOLUME,
}

SNAPSHOT_MARKER = b"OWRT"
DEADCODE_MARKER = (0xDEADC0DE).to_bytes(4, "big")
JFFS2_MARKER = (0x1985).to_bytes(2, "little")
ERASED_WORD = b"\xff" * 4

_MTD_LINE = re.compile(r"mtd(\d+):")


def _read_lines(path: str) -> list[str] | None:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read().splitlines()
    except OSError:
        return None


def mtd_find_index(name: str, proc_mtd: str = PROC_MTD) -> str | None:
    """Return the index of the MTD partition called ``name``, as text."""
    for line in _read_lines(proc_mtd) or ():
        position = line.find(name)
        if position < 0 or line[position + len(name):position + len(name) + 1] != '"':
            continue
        colon = line.find(":")
        if colon < 0:
            continue
        return line[3:colon]
    return None


def _mtd_open(mtd: str, block: bool, proc_mtd: str) -> int:
    flags = os.O_RDWR | os.O_SYNC
    kind = "block" if block else ""
    for line in _read_lines(proc_mtd) or ():
        match = _MTD_LINE.match(line)
        if match and mtd in line:
            index = match.group(1)
            try:
                return os.open(f"/dev/mtd{kind}/{index}", flags)
            except OSError:
                return os.open(f"/dev/mtd{kind}{index}", flags)
    return os.open(mtd, flags)


def identify_marker(word: bytes, volume_type: VolumeType) -> FsType:
    """Classify the first word of a flash partition."""
    if word == SNAPSHOT_MARKER:
        return FsType.SNAPSHOT
    if word == DEADCODE_MARKER:
        return FsType.DEADCODE
    if word[0:2] == JFFS2_MARKER or word[2:4] == JFFS2_MARKER:
        return FsType.JFFS2
    if volume_type == VolumeType.UBIVOLUME and word == ERASED_WORD:
        return FsType.JFFS2
    return FsType.NONE


@dataclass(eq=False)
class MtdVolume(Volume):
    """A volume on an MTD character device."""

    idx: int = 0
    chr: str | None = None
    fd: int = -1
    proc_mtd: str = PROC_MTD

    def _unlock(self, length: int) -> None:
        try:
            fcntl.ioctl(self.fd, MEMUNLOCK, _ERASE_INFO.pack(0, length))
        except OSError:
            pass

    def load(self) -> None:
        """Open the device and read its geometry, or rewind it if already open."""
        if self.fd >= 0:
            try:
                os.lseek(self.fd, 0, os.SEEK_SET)
            except OSError as exc:
                raise VolumeError(f"cannot rewind {self.chr}: {exc}") from exc
            return
        if not self.chr:
            raise VolumeError(f"volume {self.name!r} has no device")
        try:
            self.fd = _mtd_open(self.chr, False, self.proc_mtd)
        except OSError as exc:
            log.error("Could not open mtd device: %s", self.chr)
            raise VolumeError(f"cannot open {self.chr}: {exc}") from exc
        try:
            info = fcntl.ioctl(self.fd, MEMGETINFO, bytes(_MTD_INFO.size))
        except OSError as exc:
            self.close()
            log.error("Could not get MTD device info from %s", self.chr)
            raise VolumeError(f"cannot get MTD info from {self.chr}") from exc
        mtd_type, _flags, size, erasesize, *_ = _MTD_INFO.unpack(info)
        self.size = size
        self.block_size = erasesize
        self.type = _MTD_TYPES.get(mtd_type, VolumeType.UNKNOWN)
        self._unlock(self.size)

    def close(self) -> None:
        """Close the device if it is open."""
        if self.fd < 0:
            return
        try:
            os.close(self.fd)
        except OSError:
            pass
        self.fd = -1

    def init(self) -> None:
        self.load()
        try:
            info = fcntl.ioctl(self.fd, MEMGETINFO, bytes(_MTD_INFO.size))
        except OSError as exc:
            log.error("ioctl(%d, MEMGETINFO) failed: %s", self.fd, exc)
            raise VolumeError(f"MEMGETINFO failed on {self.chr}") from exc
        self._unlock(_MTD_INFO.unpack(info)[2])

    def identify(self) -> FsType:
        try:
            self.load()
        except VolumeError:
            log.error("reading %s failed", self.name)
            raise
        try:
            word = os.read(self.fd, 4)
        except OSError as exc:
            raise VolumeError(f"reading {self.name} failed: {exc}") from exc
        if len(word) != 4:
            log.error("reading %s failed", self.name)
            raise VolumeError(f"short read on {self.name}")
        if word == ERASED_WORD:
            buf = array.array("B", word)
            try:
                fcntl.ioctl(self.fd, MEMREADOOB, _OOB_BUF.pack(0, 4, buf.buffer_info()[0]))
                word = buf.tobytes()
            except OSError:
                pass
        return identify_marker(word, self.type)

    def read(self, offset: int, length: int) -> bytes:
        self.load()
        try:
            os.lseek(self.fd, offset, os.SEEK_SET)
        except OSError as exc:
            log.error("lseek/read failed")
            raise VolumeError(f"seek to {offset} failed: {exc}") from exc
        try:
            return os.read(self.fd, length)
        except OSError as exc:
            log.error("read failed")
            raise VolumeError(f"read at {offset} failed: {exc}") from exc

    def write(self, offset: int, data: bytes) -> None:
        self.load()
        try:
            os.lseek(self.fd, offset, os.SEEK_SET)
        except OSError as exc:
            log.error("lseek/write failed at offset %d", offset)
            raise VolumeError(f"seek to {offset} failed: {exc}") from exc
        try:
            os.write(self.fd, data)
        except OSError as exc:
            log.error("write failed")
            raise VolumeError(f"write at {offset} failed: {exc}") from exc

    def erase(self, offset: int, length: int) -> None:
        self.load()
        block_size = self.block_size
        if not block_size or offset % block_size or length % block_size:
            log.error("mtd erase needs to be block aligned")
            raise VolumeError("mtd erase needs to be block aligned")
        end = offset + length
        start = offset
        while start < self.size and start < end:
            log.info("erasing %x %x", start, block_size)
            request = _ERASE_INFO.pack(start, block_size)
            try:
                fcntl.ioctl(self.fd, MEMUNLOCK, request)
            except OSError:
                pass
            try:
                fcntl.ioctl(self.fd, MEMERASE, request)
            except OSError:
                log.error("Failed to erase block at 0x%x", start)
            start += block_size
        self.close()

    def erase_all(self) -> None:
        try:
            self.erase(0, self.size)
        finally:
            self.close()


class MtdDriver(Driver):
    """Finds volumes among the partitions listed in /proc/mtd."""

    name = "mtd"
    priority = 10

    def __init__(self, proc_mtd: str = PROC_MTD) -> None:
        self.proc_mtd = proc_mtd

    def find(self, name: str) -> MtdVolume | None:
        index = mtd_find_index(name, self.proc_mtd)
        if index is None:
            return None
        match = re.match(r"\s*(\d+)", index)
        volume = MtdVolume(
            name=name,
            blk=f"/dev/mtdblock{index}",
            driver=self,
            idx=int(match.group(1)) if match else 0,
            chr=f"/dev/mtd{index}",
            proc_mtd=self.proc_mtd,
        )
        try:
            volume.load()
        except VolumeError:
            log.error("reading %s failed", name)
            return None
        return volume


register_driver(MtdDriver())