"""Volumes on block-device partitions found by their partition name."""

from __future__ import annotations

import glob
import os
from dataclasses import dataclass

from .common import (
    BLOCK_DIR_NAME,
    block_file_identify,
    block_volume_format,
    read_uint_from_file,
)
from .volume import Driver, FsType, Volume, VolumeError, VolumeType, register_driver

PROC_CMDLINE = "/proc/cmdline"
DEV_DIR = "/dev"

_BUFLEN = 64
_READ_LIMIT = 1023
_DEVICE_MAX = 10
_SECTOR_SHIFT = 9


def get_var_from_file(path: str, name: str) -> str | None:
    """Return the value of ``name=value`` among the blank-separated words of ``path``."""
    try:
        with open(path, "rb") as f:
            data = f.read(_READ_LIMIT)
    except OSError:
        return None
    if not data:
        return None
    text = data.decode("utf-8", "replace")
    for word in text.replace("\t", " ").replace("\n", " ").split(" "):
        key, sep, value = word.partition("=")
        if sep and key == name:
            return value[: _BUFLEN - 1]
    return None


def rootdevname(devpath: str) -> str:
    """Strip the partition suffix from a device path and return the disk's name.

    ``/dev/sda2`` gives ``sda`` and ``/dev/mmcblk0p2`` gives ``mmcblk0``.
    """
    if not devpath:
        return ""
    end = len(devpath) - 1
    while end > 0 and devpath[end].isdigit() and devpath[end].isascii():
        end -= 1
    if devpath[end] != "p":
        end += 1
    return os.path.basename(devpath[:end])


def _identify_path(path: str | None) -> FsType:
    if path is None:
        return FsType.NONE
    try:
        with open(path, "rb") as f:
            return block_file_identify(f, 0)
    except OSError:
        return FsType.NONE


@dataclass(eq=False)
class PartnameVolume(Volume):
    """A named partition and the disk that holds it."""

    device: str = ""
    parent_devpath: str = ""
    block_dir: str = BLOCK_DIR_NAME

    def init(self) -> None:
        voldir = os.path.join(self.block_dir, self.device)
        sectors = read_uint_from_file(voldir, "size")
        if sectors is None:
            raise VolumeError(f"cannot read the size of {self.device} from {voldir}")
        self.type = VolumeType.BLOCKDEV
        self.size = sectors << _SECTOR_SHIFT
        block_volume_format(self, 0, self.parent_devpath)

    def identify(self) -> FsType:
        return _identify_path(self.blk)


class PartnameDriver(Driver):
    """Finds partitions whose PARTNAME matches, preferably on the root disk.

    The kernel command line controls the search: ``fstools_ignore_partname=1``
    disables it, and with a ``root=`` that is not a device path the search
    over all disks happens only with ``fstools_partname_fallback_scan=1``.
    """

    name = "partname"
    priority = 25

    def __init__(
        self,
        cmdline: str = PROC_CMDLINE,
        block_dir: str = BLOCK_DIR_NAME,
        dev_dir: str = DEV_DIR,
    ) -> None:
        self.cmdline = cmdline
        self.block_dir = block_dir
        self.dev_dir = dev_dir

    def _pattern(self) -> tuple[str, str | None] | None:
        if get_var_from_file(self.cmdline, "fstools_ignore_partname") == "1":
            return None
        allow_fallback = get_var_from_file(self.cmdline, "fstools_partname_fallback_scan") == "1"
        root = get_var_from_file(self.cmdline, "root")
        base = glob.escape(self.block_dir)
        if root is not None and root.startswith("/"):
            rootdev = rootdevname(root)
            return f"{base}/{glob.escape(rootdev)}/*/uevent", rootdev
        if root is not None and not allow_fallback:
            return None
        return f"{base}/*/uevent", None

    def find(self, name: str) -> PartnameVolume | None:
        search = self._pattern()
        if search is None:
            return None
        pattern, rootdev = search

        for uevent in sorted(glob.glob(pattern)):
            if get_var_from_file(uevent, "PARTNAME") == name:
                devname = os.path.basename(os.path.dirname(uevent))
                break
        else:
            return None

        device = devname[:_DEVICE_MAX]
        parent = (rootdev if rootdev is not None else rootdevname(devname))[:_DEVICE_MAX]
        return PartnameVolume(
            name=name,
            blk=f"{self.dev_dir}/{device}",
            driver=self,
            device=device,
            parent_devpath=f"{self.dev_dir}/{parent}",
            block_dir=self.block_dir,
        )


register_driver(PartnameDriver())