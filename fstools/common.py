"""Helpers shared by the block-device volume drivers."""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from typing import BinaryIO

from .volume import FsType, Volume, VolumeError

log = logging.getLogger(__name__)

F2FS_MINSIZE = 100000 * 1024 * 1024
BLOCK_DIR_NAME = "/sys/class/block"

GZIP_MAGIC = (0x88B1F).to_bytes(4, "little")
DEADCODE_MAGIC = (0xDEADC0DE).to_bytes(4, "big")
ERASED_WORD = b"\xff" * 4
F2FS_MAGIC = 0xF2F52010
EXT4_MAGIC = 0xEF53

_SECTOR = 512
_MAX_PADDING_BLOCKS = 512
_UINT_RE = re.compile(rb"\s*\+?(\d+)")


def read_uint_from_file(dirname: str, filename: str) -> int | None:
    """Return the unsigned integer at the start of ``dirname/filename``, or None."""
    try:
        with open(os.path.join(dirname, filename), "rb") as f:
            content = f.read()
    except OSError:
        return None
    match = _UINT_RE.match(content)
    if match is None:
        return None
    return int(match.group(1)) & 0xFFFFFFFF


def read_string_from_file(dirname: str, filename: str, bufsize: int = 128) -> str | None:
    """Return the first line of ``dirname/filename`` without trailing whitespace.

    At most ``bufsize - 1`` bytes are read; None is returned when the file is
    missing or empty.
    """
    try:
        with open(os.path.join(dirname, filename), "rb") as f:
            line = f.readline(max(bufsize - 1, 0))
    except OSError:
        return None
    if not line:
        return None
    text = line.decode("utf-8", "replace")
    end = len(text)
    while end > 1 and text[end - 1] <= " ":
        end -= 1
    return text[:end]


def _read_word(f: BinaryIO, position: int) -> bytes:
    f.seek(position)
    word = f.read(4)
    if len(word) != 4:
        raise VolumeError(f"short read at offset {position:#x}")
    return word


def block_file_identify(f: BinaryIO, offset: int) -> FsType:
    """Identify the filesystem found at ``offset`` in the binary file ``f``."""
    f.seek(offset)
    head = f.read(4).ljust(4, b"\0")
    if head == GZIP_MAGIC:
        return FsType.TARGZ
    if head == DEADCODE_MAGIC:
        return FsType.DEADCODE

    if int.from_bytes(_read_word(f, offset + 0x400), "little") == F2FS_MAGIC:
        return FsType.F2FS

    if int.from_bytes(_read_word(f, offset + 0x438), "little") & 0xFFFF == EXT4_MAGIC:
        return FsType.EXT4

    return FsType.NONE


def _skip_padding(blk: str) -> tuple[int, bytes]:
    """Walk over erased or 0xdeadc0de sectors; return the count and the word found."""
    try:
        with open(blk, "rb") as f:
            skip_blocks = 0
            while True:
                word = _read_word(f, (skip_blocks + 1) * _SECTOR)
                skip_blocks += 1
                if skip_blocks > _MAX_PADDING_BLOCKS or word not in (DEADCODE_MAGIC, ERASED_WORD):
                    return skip_blocks, word
    except OSError as exc:
        raise VolumeError(f"cannot read {blk}: {exc}") from exc


def _extract_backup(blk: str, skip_blocks: int) -> None:
    command = (
        f"dd if={shlex.quote(blk)} bs=512 skip={skip_blocks} 2>/dev/null"
        " | gzip -cd > /tmp/sysupgrade.tar 2>/dev/null"
    )
    try:
        subprocess.run(command, shell=True, check=False)
    except OSError as exc:
        log.error("failed extracting config backup from %s", blk)
        raise VolumeError(f"failed extracting config backup from {blk}") from exc


def _use_f2fs(offset: int, bdev: str) -> bool:
    try:
        fd = os.open(bdev, os.O_RDONLY)
    except OSError:
        return False
    try:
        size = os.lseek(fd, 0, os.SEEK_END)
    except OSError:
        return False
    finally:
        os.close(fd)
    return size - offset > F2FS_MINSIZE


def _format(blk: str, offset: int, bdev: str) -> None:
    log.info("overlay filesystem in %s has not been formatted yet", blk)
    if _use_f2fs(offset, bdev):
        command = f"mkfs.f2fs -q -f -l rootfs_data {shlex.quote(blk)}"
    else:
        command = f"mkfs.ext4 -q -F -L rootfs_data {shlex.quote(blk)}"
    result = subprocess.run(command, shell=True, check=False)
    if result.returncode != 0:
        raise VolumeError(f"{command!r} failed with status {result.returncode}")


def block_volume_format(volume: Volume, offset: int, bdev: str) -> None:
    """Format ``volume`` unless it already holds a filesystem.

    A gzip-compressed configuration backup found at the start of the volume
    (possibly after erased padding) is first extracted to /tmp/sysupgrade.tar.
    """
    fstype = volume.identify()
    if fstype in (FsType.DEADCODE, FsType.NONE):
        skip_blocks, word = _skip_padding(volume.blk)
        if word == GZIP_MAGIC:
            _extract_backup(volume.blk, skip_blocks)
        _format(volume.blk, offset, bdev)
    elif fstype == FsType.TARGZ:
        _extract_backup(volume.blk, 0)
        _format(volume.blk, offset, bdev)