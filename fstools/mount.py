"""Mounting, moving mount points and switching the root filesystem."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from contextlib import suppress

from .find import PROC_FILESYSTEMS, find_filesystem

log = logging.getLogger(__name__)

RESTORECON = "/sbin/restorecon"
FILESYSTEMS = PROC_FILESYSTEMS


class MountError(Exception):
    """Raised when a mount operation or a root switch fails."""


def _run(argv: list[str]) -> int:
    try:
        return subprocess.run(argv, check=False).returncode
    except OSError as exc:
        raise MountError(f"cannot run {argv[0]}: {exc}") from exc


def mount(
    source: str,
    target: str,
    fstype: str | None = None,
    options: Sequence[str] = (),
) -> None:
    """Mount ``source`` on ``target``; the option ``move`` moves a mount instead."""
    opts = list(options)
    argv = ["mount"]
    if "move" in opts:
        argv.append("--move")
        opts = []
    if fstype:
        argv += ["-t", fstype]
    if opts:
        argv += ["-o", ",".join(opts)]
    argv += [source, target]
    status = _run(argv)
    if status:
        raise MountError(f"mount {source} on {target} failed with status {status}")


def umount(target: str, detach: bool = False) -> None:
    """Unmount ``target``, lazily when ``detach`` is set."""
    argv = ["umount"]
    if detach:
        argv.append("-l")
    argv.append(target)
    status = _run(argv)
    if status:
        raise MountError(f"umount {target} failed with status {status}")


def mount_move(oldroot: str, newroot: str, directory: str) -> None:
    """Move the mount at ``oldroot + directory`` to ``newroot + directory``."""
    olddir = f"{oldroot}{directory}"
    newdir = f"{newroot}{directory}"
    if not os.path.isdir(olddir):
        raise MountError(f"{olddir} is not a directory")
    if not os.path.isdir(newdir):
        raise MountError(f"{newdir} is not a directory")
    mount(olddir, newdir, None, ("noatime", "move"))


def pivot(new_root: str, old_root: str) -> None:
    """Make ``new_root`` the root and put the old root at ``new_root + old_root``."""
    mount_move("", new_root, "/proc")

    pivotdir = f"{new_root}{old_root}"
    try:
        status = _run(["pivot_root", new_root, pivotdir])
    except MountError:
        log.error("pivot_root failed %s %s", new_root, pivotdir)
        raise
    if status:
        log.error("pivot_root failed %s %s", new_root, pivotdir)
        raise MountError(f"pivot_root {new_root} {pivotdir} failed with status {status}")

    for directory in ("/dev", "/tmp", "/sys", "/overlay"):
        with suppress(MountError):
            mount_move(old_root, "", directory)


def selinux_restorecon(overlaydir: str) -> None:
    """Restore SELinux labels below ``overlaydir`` where restorecon is installed."""
    if not os.path.exists(RESTORECON):
        return
    with suppress(OSError):
        subprocess.run([RESTORECON, overlaydir], check=False)


def _mkdir_existing_ok(path: str) -> None:
    try:
        os.mkdir(path, 0o755)
    except FileExistsError:
        pass
    except OSError as exc:
        raise MountError(f"cannot create {path}: {exc}") from exc


def fopivot(rw_root: str, ro_root: str) -> None:
    """Pivot onto an overlay of / with ``rw_root`` as its writable layer."""
    if not find_filesystem("overlay", FILESYSTEMS):
        log.error("BUG: no suitable fs found")
        raise MountError("overlay filesystem is not supported by the kernel")

    overlay = f"overlayfs:{rw_root}"
    upperdir = f"{rw_root}/upper"
    workdir = f"{rw_root}/work"
    upgrade = f"{rw_root}/sysupgrade.tgz"
    upgrade_dest = f"{upperdir}/sysupgrade.tgz"
    mount_options = f"lowerdir=/,upperdir={upperdir},workdir={workdir}"

    # label a freshly created overlay before its upper directory exists
    if not os.path.exists(upperdir):
        selinux_restorecon(rw_root)

    # overlayfs needs upper and work directories on the same filesystem
    _mkdir_existing_ok(upperdir)
    _mkdir_existing_ok(workdir)

    if os.path.exists(upgrade):
        with suppress(OSError):
            os.rename(upgrade, upgrade_dest)

    try:
        mount(overlay, "/mnt", "overlay", ("noatime", mount_options))
    except MountError:
        log.error("mount failed, options %s", mount_options)
        raise

    pivot("/mnt", ro_root)


def ramoverlay() -> None:
    """Keep filesystem changes in RAM on top of the read-only root."""
    with suppress(OSError):
        os.mkdir("/tmp/root", 0o755)
    with suppress(MountError):
        mount("tmpfs", "/tmp/root", "tmpfs", ("noatime", "mode=0755"))
    fopivot("/tmp/root", "/rom")