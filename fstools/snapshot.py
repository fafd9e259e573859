"""Configuration snapshots stored as headed files on a flash volume."""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import random
import struct
import subprocess
from contextlib import suppress
from dataclasses import dataclass, field
from enum import IntEnum

from .mount import MountError, fopivot, mount, mount_move
from .overlay import foreachdir, handle_whiteout
from .volume import Volume, VolumeError

log = logging.getLogger(__name__)

OWRT = 0x4F575254
CONFIG_ARCHIVE = "/tmp/config.tar.gz"
SNAPSHOT_TOOL = "/sbin/snapshot"
MAX_FILE_SIZE = 8 * 1024 * 1204

_HEADER = struct.Struct(">4I")
_MD5 = struct.Struct("<4I")
_MD5_BE = struct.Struct(">4I")
HEADER_SIZE = _HEADER.size + _MD5.size
_CHUNK = 256


class HeaderType(IntEnum):
    """Kind of file a snapshot header introduces."""

    DATA = 0x44415441
    CONF = 0x434F4E46


@dataclass
class FileHeader:
    """Header in front of each file stored on the volume."""

    magic: int = 0
    type: int = 0
    seq: int = 0
    length: int = 0
    md5: bytes = field(default=bytes(16))

    def pack(self) -> bytes:
        return _HEADER.pack(self.magic, self.type, self.seq, self.length) + _MD5_BE.pack(
            *_MD5.unpack(self.md5)
        )

    @classmethod
    def unpack(cls, data: bytes) -> FileHeader:
        if len(data) < HEADER_SIZE:
            raise ValueError(f"file header needs {HEADER_SIZE} bytes, got {len(data)}")
        magic, htype, seq, length = _HEADER.unpack_from(data)
        md5 = _MD5.pack(*_MD5_BE.unpack_from(data, _HEADER.size))
        return cls(magic, htype, seq, length, md5)

    def is_config(self) -> bool:
        return self.magic == OWRT and self.type == HeaderType.CONF


def valid_file_size(size: int) -> bool:
    """Tell whether ``size`` is acceptable for a stored file."""
    return 0 < size <= MAX_FILE_SIZE


def pad_file_size(block_size: int, size: int) -> int:
    """Return the space a file of ``size`` bytes takes with its header, in whole blocks."""
    size += HEADER_SIZE
    remainder = size % block_size
    if remainder:
        size += block_size - remainder
    return size


def _md5sum(path: str) -> tuple[bytes, int]:
    digest = hashlib.md5()
    total = 0
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            digest.update(chunk)
            total += len(chunk)
    return digest.digest(), total


def verify_file_hash(path: str, md5: bytes) -> bool:
    """Tell whether the MD5 digest of ``path`` equals ``md5``."""
    try:
        digest, total = _md5sum(path)
    except OSError:
        total = 0
    if total <= 0:
        log.error("failed to generate md5 sum")
        return False
    if digest != md5:
        log.error("failed to verify hash of %s.", path)
        return False
    return True


def _read_header(volume: Volume, offset: int) -> FileHeader:
    return FileHeader.unpack(volume.read(offset, HEADER_SIZE))


def snapshot_next_free(volume: Volume) -> tuple[int, int]:
    """Return the first block after the data files and the last sequence number."""
    seq = random.getrandbits(31)
    block = 0
    while True:
        try:
            hdr = _read_header(volume, block * volume.block_size)
        except (VolumeError, ValueError):
            log.error("scanning for next free block failed")
            return 0, seq
        if hdr.magic != OWRT or hdr.type != HeaderType.DATA:
            break
        if not valid_file_size(hdr.length):
            break
        if (seq + 1) & 0xFFFFFFFF != hdr.seq and block:
            return block, seq
        seq = hdr.seq
        block += pad_file_size(volume.block_size, hdr.length) // volume.block_size
    return block, seq


def config_find(volume: Volume) -> tuple[int | None, FileHeader, FileHeader]:
    """Locate the sentinel configuration stored from the end of the volume.

    Returns its block (or None), the header at the free position and the
    sentinel header.
    """
    following, _ = snapshot_next_free(volume)
    conf = FileHeader()
    sentinel = FileHeader()
    with suppress(VolumeError, ValueError):
        conf = _read_header(volume, following)

    for index in range(volume.size // volume.block_size - 1, 0, -1):
        try:
            sentinel = _read_header(volume, index * volume.block_size)
        except (VolumeError, ValueError):
            log.error("failed to read header")
            return None, conf, sentinel
        if sentinel.is_config() and valid_file_size(sentinel.length):
            return (None if following == index else index), conf, sentinel
    return None, conf, sentinel


def snapshot_write_file(
    volume: Volume, block: int, path: str, seq: int, header_type: HeaderType
) -> None:
    """Store ``path`` with its header at ``block``."""
    try:
        size = os.stat(path).st_size
        digest, total = _md5sum(path)
    except OSError as exc:
        log.error("stat failed on %s", path)
        raise VolumeError(f"cannot read {path}") from exc
    if total != size:
        log.error("stat failed on %s", path)
        raise VolumeError(f"{path} changed while reading")

    start = block * volume.block_size
    padded = pad_file_size(volume.block_size, size)
    if start + padded > volume.size:
        log.error("upgrade is too big for the flash")
        raise VolumeError("upgrade is too big for the flash")
    volume.erase(start, padded)
    volume.erase(start + padded, volume.block_size)

    header = FileHeader(OWRT, int(header_type), seq & 0xFFFFFFFF, size, digest)
    try:
        volume.write(start, header.pack())
    except VolumeError:
        log.error("failed to write header")
        raise

    try:
        with open(path, "rb") as f:
            offset = start + HEADER_SIZE
            for chunk in iter(lambda: f.read(_CHUNK), b""):
                volume.write(offset, chunk)
                offset += len(chunk)
    except OSError as exc:
        log.error("failed to open %s", path)
        raise VolumeError(f"cannot open {path}") from exc


def snapshot_read_file(
    volume: Volume, block: int, path: str, header_type: HeaderType
) -> int | None:
    """Extract the file stored at ``block`` into ``path``.

    Returns None when no such file is stored there, 0 when its hash does not
    match (``path`` is then removed) and otherwise the block after its header.
    """
    try:
        hdr = _read_header(volume, block * volume.block_size)
    except (VolumeError, ValueError) as exc:
        log.error("failed to read header")
        raise VolumeError("failed to read header") from exc
    if hdr.magic != OWRT or hdr.type != header_type or not valid_file_size(hdr.length):
        return None

    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o700)
    except OSError as exc:
        log.error("failed to open %s", path)
        raise VolumeError(f"cannot open {path}") from exc
    try:
        offset = block * volume.block_size + HEADER_SIZE
        remaining = hdr.length
        while remaining > 0:
            length = min(_CHUNK, remaining)
            data = volume.read(offset, length)
            if os.write(fd, data) != length:
                raise VolumeError(f"short write to {path}")
            offset += length
            remaining -= length
    except OSError as exc:
        raise VolumeError(f"writing {path} failed") from exc
    finally:
        os.close(fd)

    if not verify_file_hash(path, hdr.md5):
        log.error("md5 verification failed")
        with suppress(OSError):
            os.unlink(path)
        return 0

    # the header length has been consumed, so only the header block is skipped
    return block + pad_file_size(volume.block_size, 0) // volume.block_size


def _archive_size() -> int:
    try:
        return os.stat(CONFIG_ARCHIVE).st_size
    except OSError as exc:
        log.error("failed to stat %s", CONFIG_ARCHIVE)
        raise VolumeError(f"cannot stat {CONFIG_ARCHIVE}") from exc


def sentinel_write(volume: Volume, seq: int = 0) -> None:
    """Store the configuration archive at the end of the volume."""
    size = _archive_size()
    _, next_seq = snapshot_next_free(volume)
    if seq:
        next_seq = seq
    block = volume.size // volume.block_size
    block -= pad_file_size(volume.block_size, size) // volume.block_size
    block = max(block, 0)
    try:
        snapshot_write_file(volume, block, CONFIG_ARCHIVE, next_seq, HeaderType.CONF)
    except VolumeError:
        log.error("failed to write sentinel")
        raise
    log.info("wrote %s sentinel", CONFIG_ARCHIVE)


def volatile_write(volume: Volume, seq: int = 0) -> None:
    """Store the configuration archive after the data files."""
    block, next_seq = snapshot_next_free(volume)
    if seq:
        next_seq = seq
    block = max(block, 0)
    try:
        snapshot_write_file(volume, block, CONFIG_ARCHIVE, next_seq, HeaderType.CONF)
    except VolumeError:
        log.error("failed to write %s", CONFIG_ARCHIVE)
        raise
    log.info("wrote %s", CONFIG_ARCHIVE)


def snapshot_sync(volume: Volume) -> None:
    """Bring the volatile configuration and the sentinel copy in line."""
    following, seq = snapshot_next_free(volume)
    block, conf, sentinel = config_find(volume)
    if conf.is_config() and conf.seq != seq:
        conf.magic = 0
        volume.erase(following * volume.block_size, 2 * volume.block_size)

    if sentinel.is_config() and sentinel.seq != seq:
        sentinel.magic = 0
        volume.erase((block or 0) * volume.block_size, volume.block_size)

    have_conf = conf.is_config()
    have_sentinel = sentinel.is_config()
    try:
        if not have_conf and not have_sentinel:
            pass
        elif (have_conf and have_sentinel and (conf.md5 != sentinel.md5 or conf.seq != sentinel.seq)) or (
            have_conf and not have_sentinel
        ):
            start, _ = snapshot_next_free(volume)
            result = snapshot_read_file(volume, start, CONFIG_ARCHIVE, HeaderType.CONF)
            if result:
                try:
                    sentinel_write(volume, conf.seq)
                except VolumeError:
                    log.error("failed to write sentinel data")
        elif not have_conf and have_sentinel and following:
            result = snapshot_read_file(volume, block or 0, CONFIG_ARCHIVE, HeaderType.CONF)
            if result:
                try:
                    volatile_write(volume, sentinel.seq)
                except VolumeError:
                    log.error("failed to write sentinel data")
        else:
            log.info("config in sync")
    finally:
        with suppress(OSError):
            os.unlink(CONFIG_ARCHIVE)


def _ramoverlay(rom: str, overlay: str) -> None:
    with suppress(MountError):
        mount("tmpfs", overlay, "tmpfs", ("noatime", "mode=0755"))
    with suppress(MountError):
        fopivot(overlay, rom)


def _snapshot_command(argument: str) -> int:
    try:
        return subprocess.run([SNAPSHOT_TOOL, argument], check=False).returncode
    except OSError as exc:
        raise VolumeError(f"cannot run {SNAPSHOT_TOOL}: {exc}") from exc


def mount_snapshot(volume: Volume) -> None:
    """Boot from RAM overlays filled with the snapshots stored on ``volume``."""
    snapshot_sync(volume)
    os.environ["SNAPSHOT"] = "magic"
    _ramoverlay("/rom", "/overlay")
    _snapshot_command("unpack")
    foreachdir("/overlay/", handle_whiteout)
    try:
        os.mkdir("/volatile", 0o700)
    except OSError as exc:
        if exc.errno != errno.EEXIST:
            raise VolumeError(f"cannot create /volatile: {exc}") from exc
    _ramoverlay("/rom", "/volatile")
    with suppress(MountError):
        mount_move("/rom/volatile", "/volatile", "")
    with suppress(MountError):
        mount_move("/rom/rom", "/rom", "")
    status = _snapshot_command("config_unpack")
    if status:
        raise VolumeError(f"{SNAPSHOT_TOOL} config_unpack failed with status {status}")
    foreachdir("/volatile/", handle_whiteout)
    os.environ.pop("SNAPSHOT", None)