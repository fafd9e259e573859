"""Volumes on FIT image partitions exposed as /dev/fit* block devices."""

from __future__ import annotations

import os
from dataclasses import dataclass

from .common import (
    BLOCK_DIR_NAME,
    block_file_identify,
    block_volume_format,
    read_uint_from_file,
)
from .volume import Driver, FsType, Volume, VolumeError, VolumeType, register_driver

FIT0 = "/dev/fit0"
FITRW = "/dev/fitrw"

_SECTOR_SHIFT = 9


def _identify_path(path: str | None, offset: int = 0) -> FsType:
    if path is None:
        return FsType.NONE
    try:
        with open(path, "rb") as f:
            return block_file_identify(f, offset)
    except OSError:
        return FsType.NONE


@dataclass(eq=False)
class FitVolume(Volume):
    """A FIT partition; ``device`` is its name below the block class directory."""

    device: str = ""
    block_dir: str = BLOCK_DIR_NAME

    def init(self) -> None:
        voldir = os.path.join(self.block_dir, self.device)
        sectors = read_uint_from_file(voldir, "size")
        if sectors is None:
            raise VolumeError(f"cannot read the size of {self.device} from {voldir}")
        self.type = VolumeType.BLOCKDEV
        self.size = sectors << _SECTOR_SHIFT
        block_volume_format(self, 0, self.blk)

    def identify(self) -> FsType:
        return _identify_path(self.blk)


class FitDriver(Driver):
    """Provides rootfs and rootfs_data from the FIT block devices."""

    name = "fit"
    priority = 30

    def __init__(
        self, fit0: str = FIT0, fitrw: str = FITRW, block_dir: str = BLOCK_DIR_NAME
    ) -> None:
        self.fit0 = fit0
        self.fitrw = fitrw
        self.block_dir = block_dir

    def find(self, name: str) -> FitVolume | None:
        path = {"rootfs": self.fit0, "rootfs_data": self.fitrw}.get(name)
        if path is None or not os.path.exists(path):
            return None
        return FitVolume(
            name=name,
            blk=path,
            driver=self,
            device=os.path.basename(path),
            block_dir=self.block_dir,
        )


register_driver(FitDriver())