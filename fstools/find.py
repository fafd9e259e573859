"""Queries over the kernel's mount and filesystem tables."""

from __future__ import annotations

import logging
import os
import re
import stat

log = logging.getLogger(__name__)

PROC_MOUNTS = "/proc/mounts"
PROC_MOUNTINFO = "/proc/self/mountinfo"
PROC_FILESYSTEMS = "/proc/filesystems"

_ROOTFS_TYPES = ("ext4", "f2fs", "jffs2", "ubifs")
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _lines(path: str) -> list[str] | None:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read().splitlines()
    except OSError:
        return None


def _atoi(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def find_overlay_mount(overlay: str, mounts: str = PROC_MOUNTS) -> bool:
    """Tell whether a mount whose device field is exactly ``overlay`` exists."""
    lines = _lines(mounts)
    if lines is None:
        return False
    prefix = overlay + " "
    return any(line.startswith(prefix) for line in lines)


def find_mount(mountpoint: str, mounts: str = PROC_MOUNTS) -> str | None:
    """Return the device mounted on ``mountpoint``, or None."""
    lines = _lines(mounts)
    if lines is None:
        return None
    for line in lines:
        device, sep, rest = line.partition(" ")
        if not sep:
            return None
        target, sep, _ = rest.partition(" ")
        if not sep:
            return None
        if target == mountpoint:
            return device
    return None


def _is_rootfs_type(fstype: str) -> bool:
    if fstype.startswith(_ROOTFS_TYPES):
        return True
    log.error("block is mounted with wrong fs")
    return False


def find_mount_point(
    block: str | None, root_only: bool = False, mountinfo: str = PROC_MOUNTINFO
) -> str | None:
    """Return where ``block`` is mounted, matching by name or by device number.

    With ``root_only`` a mount whose filesystem is not usable for an overlay
    yields None.
    """
    if block is None:
        return None
    lines = _lines(mountinfo)
    if lines is None:
        return None

    try:
        st = os.stat(block)
    except OSError:
        st = None

    for line in lines:
        fields = line.split(" ")
        # devname must be followed by a further column
        if len(fields) < 10 or ":" not in fields[2]:
            continue
        major_text, _, minor_text = fields[2].partition(":")
        major, minor = _atoi(major_text), _atoi(minor_text)
        point, fstype, devname = fields[4], fields[7], fields[8]

        if devname == block:
            if root_only and not _is_rootfs_type(fstype):
                return None
            return point

        if st is None or not stat.S_ISBLK(st.st_mode):
            continue

        if major == os.major(st.st_rdev) and minor == os.minor(st.st_rdev):
            if root_only and not _is_rootfs_type(fstype):
                return None
            return point

    return None


def find_filesystem(fs: str, filesystems: str = PROC_FILESYSTEMS) -> bool:
    """Tell whether the kernel lists filesystem ``fs`` as supported."""
    lines = _lines(filesystems)
    if lines is None:
        log.error("opening %s failed", filesystems)
        return False
    return any(fs in line for line in lines)