"""Overlay filesystem setup, cleanup and state tracking."""

from __future__ import annotations

import glob
import logging
import os
import re
import stat
import subprocess
from collections.abc import Callable
from contextlib import suppress
from functools import partial

from .extroot import mount_extroot
from .find import PROC_MOUNTS, find_filesystem, find_mount_point, find_overlay_mount
from .mount import (
    MountError,
    fopivot,
    mount,
    mount_move,
    pivot,
    ramoverlay,
    selinux_restorecon,
    umount,
)
from .volume import FsState, FsType, Volume, VolumeError

log = logging.getLogger(__name__)

SWITCH_JFFS2 = "/tmp/.switch_jffs2"
OVERLAYDIR = "/rom/overlay"
TMP_OVERLAY = "/tmp/overlay"
WHITEOUT = "(overlay-whiteout)"
OVL_MOUNT_FULL_ACCESS_TIME = False
OVL_MOUNT_COMPRESS_ZLIB = False

_STATE_LINK = ".fs_state"
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def foreachdir(directory: str, callback: Callable[[str], object]) -> None:
    """Call ``callback`` on every directory below ``directory``, deepest first.

    Subdirectories are passed with a trailing slash; symbolic links are not followed.
    """
    pattern = os.path.join(glob.escape(directory), "*/")
    for path in sorted(glob.glob(pattern)):
        if not path.endswith("/"):
            continue
        bare = path[:-1] if len(path) > 1 else path
        try:
            st = os.lstat(bare)
        except OSError:
            continue
        if not stat.S_ISLNK(st.st_mode):
            foreachdir(path, callback)
    callback(directory)


def _remove_files(directory: str, keep_sysupgrade: bool) -> None:
    try:
        names = os.listdir(directory)
    except OSError:
        return
    for name in names:
        path = os.path.join(directory, name)
        try:
            st = os.lstat(path)
        except OSError:
            continue
        if stat.S_ISDIR(st.st_mode):
            continue
        if keep_sysupgrade and name == "sysupgrade.tgz":
            continue
        with suppress(OSError):
            os.unlink(path)
    with suppress(OSError):
        os.rmdir(directory)


def overlay_delete(directory: str, keep_sysupgrade: bool = False) -> None:
    """Remove everything below ``directory``, optionally sparing sysupgrade.tgz."""
    foreachdir(directory, partial(_remove_files, keep_sysupgrade=keep_sysupgrade))


def handle_whiteout(directory: str) -> list[str]:
    """Delete the root files that whiteout links in ``directory`` stand for.

    ``directory`` ends with a slash. The path a whiteout refers to is its own
    path without the first component. Returns those paths.
    """
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return []
    targets = []
    for name in names:
        path = f"{directory}{name}"
        try:
            if not stat.S_ISLNK(os.lstat(path).st_mode):
                continue
            link = os.readlink(path)[:255]
        except OSError:
            continue
        slash = path.find("/", 1)
        if link == WHITEOUT and slash >= 0:
            original = path[slash:]
            with suppress(OSError):
                os.unlink(original)
            targets.append(original)
    return targets


def overlay_fs_name(fstype: FsType | int | None) -> str:
    """Return the kernel filesystem name used to mount an overlay of ``fstype``."""
    return {
        FsType.EXT4: "ext4",
        FsType.F2FS: "f2fs",
        FsType.UBIFS: "ubifs",
    }.get(fstype, "jffs2")


def _identify(volume: Volume) -> FsType | None:
    try:
        return volume.identify()
    except VolumeError:
        return None


def _foreach_mount(callback: Callable[[str, str], object], mounts: str = PROC_MOUNTS) -> None:
    try:
        with open(mounts, encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError:
        return
    for line in lines:
        fields = line.split()
        if len(fields) >= 2:
            callback(fields[0][:31], fields[1][:31])


def _move_tmp_root_mount(device: str, mountpoint: str) -> None:
    prefix = "/tmp/root/"
    if not mountpoint.startswith(prefix):
        return
    with suppress(MountError):
        mount_move(prefix, "/", mountpoint[len(prefix):])


def _overlay_mount(volume: Volume, fs: str) -> None:
    try:
        os.mkdir(TMP_OVERLAY, 0o755)
    except OSError as exc:
        log.error("failed to mkdir %s: %s", TMP_OVERLAY, exc)
        raise MountError(f"cannot create {TMP_OVERLAY}") from exc
    try:
        mount(volume.blk, TMP_OVERLAY, fs, ("noatime",))
    except MountError:
        log.error("failed to mount -t %s %s %s", fs, volume.blk, TMP_OVERLAY)
        raise


def _run_shell(command: str) -> bool:
    try:
        return subprocess.run(command, shell=True, check=False).returncode == 0
    except OSError:
        return False


def _switch2jffs(volume: Volume) -> None:
    if os.path.exists(SWITCH_JFFS2):
        log.error("jffs2 switch already running")
        raise MountError("jffs2 switch already running")

    try:
        os.close(os.open(SWITCH_JFFS2, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600))
    except OSError as exc:
        log.error("failed - cannot create jffs2 switch mark: %s", exc)
        raise MountError("cannot create jffs2 switch mark") from exc

    try:
        mount(volume.blk, OVERLAYDIR, "jffs2", ("noatime",))
    except MountError:
        log.error("failed - mount -t jffs2 %s %s", volume.blk, OVERLAYDIR)
        raise
    finally:
        with suppress(OSError):
            os.unlink(SWITCH_JFFS2)
    selinux_restorecon(OVERLAYDIR)

    try:
        mount("none", "/", None, ("noatime", "remount"))
    except MountError:
        log.error("failed - mount -o remount,ro none")
        raise

    if not _run_shell("cp -a /tmp/root/* /rom/overlay"):
        log.error("failed - cp -a /tmp/root/* /rom/overlay")
        raise MountError("copying the RAM overlay failed")

    try:
        pivot("/rom", "/mnt")
    except MountError:
        log.error("failed - pivot /rom /mnt")
        raise

    try:
        mount_move("/mnt", "/tmp/root", "")
    except MountError:
        log.error("failed - mount -o move /mnt /tmp/root")
        raise

    error: MountError | None = None
    try:
        fopivot("/overlay", "/rom")
    except MountError as exc:
        error = exc

    # mounts made below the RAM overlay meanwhile follow it to the new root
    _foreach_mount(_move_tmp_root_mount)

    if error is not None:
        raise error


def jffs2_switch(volume: Volume) -> None:
    """Move from the RAM overlay onto the now ready rootfs_data ``volume``."""
    if not find_overlay_mount("overlayfs:/tmp/root"):
        raise MountError("not running on a RAM overlay")

    if not find_filesystem("overlay"):
        log.error("overlayfs not supported by kernel")
        raise MountError("overlayfs not supported by kernel")

    try:
        volume.init()
    except VolumeError as exc:
        log.error("initialising %s failed: %s", volume.name, exc)

    mountpoint = find_mount_point(volume.blk, False)
    if mountpoint:
        log.error("rootfs_data:%s is already mounted as %s", volume.blk, mountpoint)
        raise MountError(f"{volume.blk} is already mounted as {mountpoint}")

    fstype = _identify(volume)
    fs_name = overlay_fs_name(fstype)

    if fstype in (FsType.NONE, FsType.DEADCODE):
        if fstype == FsType.NONE:
            log.error("no jffs2 marker found")
        _switch2jffs(volume)

        log.info("performing overlay whiteout")
        with suppress(MountError):
            umount("/tmp/root", detach=True)
        foreachdir("/overlay/", handle_whiteout)

        log.info("synchronizing overlay")
        if not _run_shell("cp -a /tmp/root/upper/* / 2>/dev/null"):
            log.error("failed to sync jffs2 overlay")
    elif fstype in (FsType.EXT4, FsType.F2FS, FsType.UBIFS):
        _overlay_mount(volume, fs_name)
        try:
            mount_move("/tmp", "", "/overlay")
            fopivot("/overlay", "/rom")
        except MountError:
            log.error("switching to %s failed", fs_name)
            raise

    os.sync()
    fs_state_set("/overlay", FsState.READY)


def _overlay_mount_fs(volume: Volume, mountpoint: str) -> None:
    fstype = overlay_fs_name(_identify(volume))
    try:
        os.mkdir(mountpoint, 0o755)
    except OSError as exc:
        log.error("failed to mkdir %s: %s", mountpoint, exc)
        raise MountError(f"cannot create {mountpoint}") from exc

    options = ["relatime" if OVL_MOUNT_FULL_ACCESS_TIME else "noatime"]
    if OVL_MOUNT_COMPRESS_ZLIB:
        options.append("compr=zlib")
    try:
        mount(volume.blk, mountpoint, fstype, options)
    except MountError:
        log.error("failed to mount -t %s %s %s", fstype, volume.blk, mountpoint)
        raise


def _atoi(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def fs_state_get(directory: str) -> FsState:
    """Read the overlay state recorded in ``directory``."""
    try:
        value = os.readlink(f"{directory}/{_STATE_LINK}")[:15]
    except OSError:
        return FsState.UNKNOWN
    number = _atoi(value) & 0xFFFFFFFF
    if number > max(FsState):
        return FsState.UNKNOWN
    return FsState(number)


def fs_state_set(directory: str, state: FsState) -> None:
    """Record ``state`` as the overlay state of ``directory``."""
    if fs_state_get(directory) == state:
        return
    path = f"{directory}/{_STATE_LINK}"
    with suppress(OSError):
        os.unlink(path)
    os.symlink(str(int(state)), path)


def mount_overlay(volume: Volume | None) -> None:
    """Mount ``volume`` as the overlay, preferring a configured extroot.

    Falls back to a RAM overlay when switching to the volume fails.
    """
    if volume is None:
        raise MountError("no overlay volume")

    mountpoint = find_mount_point(volume.blk, False)
    if mountpoint:
        log.error("rootfs_data:%s is already mounted as %s", volume.blk, mountpoint)
        raise MountError(f"{volume.blk} is already mounted as {mountpoint}")

    _overlay_mount_fs(volume, TMP_OVERLAY)

    if mount_extroot(TMP_OVERLAY):
        log.info("switched to extroot")
        return

    state = fs_state_get(TMP_OVERLAY)
    wipe = state == FsState.PENDING
    if state == FsState.UNKNOWN:
        with suppress(OSError):
            fs_state_set(TMP_OVERLAY, FsState.PENDING)
        if fs_state_get(TMP_OVERLAY) != FsState.PENDING:
            log.error("unable to set filesystem state")
        else:
            wipe = True
    if wipe:
        log.info("overlay filesystem has not been fully initialized yet")
        overlay_delete(TMP_OVERLAY, True)

    fs_name = overlay_fs_name(_identify(volume))
    log.info("switching to %s overlay", fs_name)
    try:
        mount_move("/tmp", "", "/overlay")
        fopivot("/overlay", "/rom")
    except MountError:
        log.error("switching to %s failed - fallback to ramoverlay", fs_name)
        ramoverlay()