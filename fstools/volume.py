"""Volumes, the drivers that locate them, and the driver registry."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator


class FsType(IntEnum):
    """Filesystem or marker found on a volume."""

    NONE = 0
    SNAPSHOT = 1
    JFFS2 = 2
    DEADCODE = 3
    UBIFS = 4
    F2FS = 5
    EXT4 = 6
    TARGZ = 7


class FsState(IntEnum):
    """Initialisation state of an overlay filesystem."""

    UNKNOWN = 0
    PENDING = 1
    READY = 2


class VolumeType(IntEnum):
    """Kind of storage a volume lives on."""

    UNKNOWN = 0
    NANDFLASH = 1
    NORFLASH = 2
    UBIVOLUME = 3
    BLOCKDEV = 4


class VolumeError(Exception):
    """Raised when a volume operation fails or is not supported."""


class Driver:
    """Base class of volume drivers; subclasses override ``find``."""

    name: str = ""
    priority: int = 0

    def find(self, name: str) -> Volume | None:
        """Return the volume called ``name`` if this driver knows it."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"


@dataclass(eq=False)
class Volume:
    """A storage volume; drivers subclass it to implement the operations."""

    name: str
    blk: str | None = None
    size: int = 0
    block_size: int = 0
    type: VolumeType = VolumeType.UNKNOWN
    driver: Driver | None = None

    def _unsupported(self, operation: str) -> VolumeError:
        driver = self.driver.name if self.driver else "no driver"
        return VolumeError(f"volume {self.name!r} ({driver}) does not support {operation}")

    def init(self) -> None:
        """Prepare the volume for use."""
        raise self._unsupported("init")

    def identify(self) -> FsType:
        """Report which filesystem or marker the volume holds."""
        raise self._unsupported("identify")

    def read(self, offset: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``offset``."""
        raise self._unsupported("read")

    def write(self, offset: int, data: bytes) -> None:
        """Write ``data`` starting at ``offset``."""
        raise self._unsupported("write")

    def erase(self, offset: int, length: int) -> None:
        """Erase ``length`` bytes starting at ``offset``."""
        raise self._unsupported("erase")

    def erase_all(self) -> None:
        """Erase the whole volume."""
        raise self._unsupported("erase_all")


class DriverRegistry:
    """Drivers ordered by descending priority; equal priorities keep their order."""

    def __init__(self) -> None:
        self._drivers: list[Driver] = []

    def register(self, driver: Driver) -> Driver:
        for position, current in enumerate(self._drivers):
            if driver.priority > current.priority:
                self._drivers.insert(position, driver)
                return driver
        self._drivers.append(driver)
        return driver

    def find(self, name: str) -> Volume | None:
        """Ask each driver in turn for ``name``; return the first hit."""
        for driver in self:
            volume = driver.find(name)
            if volume is not None:
                return volume
        return None

    def __iter__(self) -> Iterator[Driver]:
        return iter(list(self._drivers))

    def __len__(self) -> int:
        return len(self._drivers)


_registry = DriverRegistry()


def register_driver(driver: Driver) -> Driver:
    """Add ``driver`` to the default registry."""
    return _registry.register(driver)


def volume_find(name: str) -> Volume | None:
    """Look ``name`` up through the default registry."""
    return _registry.find(name)