"""Switching to an external root filesystem prepared by the block tool."""

from __future__ import annotations

import logging
import os
import subprocess
from contextlib import suppress

from .find import find_mount
from .mount import MountError, fopivot, mount, mount_move, pivot, umount

log = logging.getLogger(__name__)

EXTROOT_DIR = "/tmp/extroot"
FALLBACK_BLOCK = "/sbin/block"
KMODLOADER = "/sbin/kmodloader"


def _find_block(prefix: str) -> str | None:
    for candidate in (f"{prefix}/upper/sbin/block", f"{prefix}/sbin/block", FALLBACK_BLOCK):
        if os.path.isfile(candidate):
            return candidate
    return None


def _load_kmods(ldlib_path: str) -> None:
    log.info("loading kmods from internal overlay")
    os.environ["LD_LIBRARY_PATH"] = ldlib_path
    modules = f"{os.path.dirname(ldlib_path)}/etc/modules-boot.d/"
    try:
        failed = subprocess.run([KMODLOADER, modules], check=False).returncode != 0
    except OSError:
        failed = True
    if failed:
        log.error("failed to launch kmodloader from internal overlay")


def _run_block(block_path: str) -> bool:
    with suppress(OSError):
        os.mkdir(EXTROOT_DIR, 0o755)
    try:
        return subprocess.run([block_path, "extroot"], check=False).returncode == 0
    except OSError:
        return False


def _cleanup(mountpoint: str) -> None:
    with suppress(MountError):
        umount("/tmp/overlay")
    for directory in ("/tmp/overlay", f"{EXTROOT_DIR}{mountpoint}", EXTROOT_DIR):
        with suppress(OSError):
            os.rmdir(directory)


def _switch_root() -> bool:
    with suppress(MountError):
        mount("/dev/root", "/", None, ("noatime", "remount", "ro"))
    for sub in ("proc", "dev", "sys", "tmp", "rom"):
        with suppress(OSError):
            os.mkdir(f"{EXTROOT_DIR}/mnt/{sub}", 0o755)

    try:
        mount_move(EXTROOT_DIR, "", "/mnt")
    except MountError:
        log.error("moving pivotroot failed - continue normal boot")
        with suppress(MountError):
            umount(f"{EXTROOT_DIR}/mnt")
        return False
    try:
        pivot("/mnt", "/rom")
    except MountError:
        log.error("switching to pivotroot failed - continue normal boot")
        with suppress(MountError):
            umount("/mnt")
        return False
    _cleanup("/mnt")
    return True


def _switch_overlay() -> bool:
    try:
        mount_move(EXTROOT_DIR, "", "/overlay")
    except MountError:
        log.error("moving extroot failed - continue normal boot")
        with suppress(MountError):
            umount(f"{EXTROOT_DIR}/overlay")
        return False
    try:
        fopivot("/overlay", "/rom")
    except MountError:
        log.error("switching to extroot failed - continue normal boot")
        with suppress(MountError):
            umount("/overlay")
        return False
    _cleanup("/overlay")
    return True


def mount_extroot(prefix: str) -> bool:
    """Run ``block extroot`` and switch to the extroot it mounted.

    Returns True when the system now runs on the extroot.
    """
    ldlib_path = f"{prefix}/upper/lib"
    if not os.path.isdir(ldlib_path):
        ldlib_path = f"{prefix}/lib"

    block_path = _find_block(prefix)
    if block_path is None:
        return False

    if os.path.isdir(ldlib_path):
        _load_kmods(ldlib_path)

    if not _run_block(block_path):
        return False

    if find_mount(f"{EXTROOT_DIR}/mnt"):
        return _switch_root()
    if find_mount(f"{EXTROOT_DIR}/overlay"):
        return _switch_overlay()
    return False