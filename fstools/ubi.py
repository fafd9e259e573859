"""Volumes on UBI devices, found through sysfs."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass

from .common import read_string_from_file, read_uint_from_file
from .find import PROC_FILESYSTEMS, find_filesystem
from .volume import Driver, FsType, Volume, VolumeError, VolumeType, register_driver

log = logging.getLogger(__name__)

UBI_DIR_NAME = "/sys/class/ubi"
DEV_DIR = "/dev"

_BUFLEN = 128
_DEVICE_RE = re.compile(r"ubi(\d+)")
_VOLUME_RE = re.compile(r"ubi\d+_(\d+)")


def _can_open(path: str) -> bool:
    try:
        with open(path, "rb"):
            return True
    except OSError:
        return False


def _sorted_entries(path: str) -> list[str] | None:
    try:
        return sorted(os.listdir(path))
    except OSError:
        return None


@dataclass(eq=False)
class UbiVolume(Volume):
    """A UBI volume identified by device number and volume id."""

    ubi_num: int = 0
    ubi_volid: int = 0
    ubi_dir: str = UBI_DIR_NAME
    dev_dir: str = DEV_DIR

    @property
    def sysfs_dir(self) -> str:
        return f"{self.ubi_dir}/ubi{self.ubi_num}_{self.ubi_volid}"

    def init(self) -> None:
        voldir = self.sysfs_dir
        volname = read_string_from_file(voldir, "name", _BUFLEN)
        if volname is None:
            raise VolumeError(f"cannot read {voldir}/name")
        size = read_uint_from_file(voldir, "data_bytes")
        if size is None:
            raise VolumeError(f"cannot read {voldir}/data_bytes")
        self.name = volname
        self.type = VolumeType.UBIVOLUME
        self.size = size
        self.blk = f"{self.dev_dir}/ubi{self.ubi_num}_{self.ubi_volid}"

    def identify(self) -> FsType:
        return FsType.UBIFS


class UbiDriver(Driver):
    """Searches every UBI device for a volume with the wanted name."""

    name = "ubi"
    priority = 20

    def __init__(
        self,
        ubi_dir: str = UBI_DIR_NAME,
        dev_dir: str = DEV_DIR,
        filesystems: str = PROC_FILESYSTEMS,
    ) -> None:
        self.ubi_dir = ubi_dir
        self.dev_dir = dev_dir
        self.filesystems = filesystems

    def _volume_match(self, name: str, ubi_num: int, volid: int) -> UbiVolume | None:
        # volumes already exposed as ubiblock devices belong to someone else
        if _can_open(f"{self.dev_dir}/ubiblock{ubi_num}_{volid}"):
            return None
        voldir = f"{self.ubi_dir}/ubi{ubi_num}_{volid}"
        volname = read_string_from_file(voldir, "name", _BUFLEN)
        if volname is None:
            log.error("Couldn't read %s/name", voldir)
            return None
        if volname != name:
            return None
        return UbiVolume(
            name=name,
            driver=self,
            ubi_num=ubi_num,
            ubi_volid=volid,
            ubi_dir=self.ubi_dir,
            dev_dir=self.dev_dir,
        )

    def _part_match(self, name: str, ubi_num: int) -> UbiVolume | None:
        for entry in _sorted_entries(f"{self.ubi_dir}/ubi{ubi_num}") or ():
            match = _VOLUME_RE.match(entry)
            if match is None:
                continue
            volume = self._volume_match(name, ubi_num, int(match.group(1)))
            if volume is not None:
                return volume
        return None

    def find(self, name: str) -> UbiVolume | None:
        if not find_filesystem("ubifs", self.filesystems):
            return None
        for entry in _sorted_entries(self.ubi_dir) or ():
            if entry.startswith("."):
                continue
            match = _DEVICE_RE.match(entry)
            if match is None:
                continue
            volume = self._part_match(name, int(match.group(1)))
            if volume is not None:
                return volume
        return None


register_driver(UbiDriver())