"""On-flash UBI headers and volume table records."""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from enum import IntEnum, IntFlag

UBI_VERSION = 1
UBI_MAX_ERASECOUNTER = 0x7FFFFFFF
UBI_CRC32_INIT = 0xFFFFFFFF

UBI_EC_HDR_MAGIC = 0x55424923
UBI_VID_HDR_MAGIC = 0x55424921

UBI_INT_VOL_COUNT = 1
UBI_INTERNAL_VOL_START = 0x7FFFFFFF - 4096

UBI_MAX_VOLUMES = 128
UBI_VOL_NAME_MAX = 127

_MASK32 = 0xFFFFFFFF


class VidVolType(IntEnum):
    """Volume type recorded in the volume identifier header."""

    DYNAMIC = 1
    STATIC = 2


class VtblFlag(IntFlag):
    """Flags of a volume table record."""

    AUTORESIZE = 0x01


class Compat(IntEnum):
    """Compatibility degree of internal volumes."""

    DELETE = 1
    RO = 2
    PRESERVE = 4
    REJECT = 5


UBI_LAYOUT_VOLUME_ID = UBI_INTERNAL_VOL_START
UBI_LAYOUT_VOLUME_TYPE = VidVolType.DYNAMIC
UBI_LAYOUT_VOLUME_ALIGN = 1
UBI_LAYOUT_VOLUME_EBS = 2
UBI_LAYOUT_VOLUME_NAME = "layout volume"
UBI_LAYOUT_VOLUME_COMPAT = Compat.REJECT

_EC_HDR = struct.Struct(">IB3xQIII32xI")
_VID_HDR = struct.Struct(">IBBBBIIIIIII4xQ12xI")
_VTBL_RECORD = struct.Struct(">IIIBBH128sB23xI")

UBI_EC_HDR_SIZE = _EC_HDR.size
UBI_VID_HDR_SIZE = _VID_HDR.size
UBI_EC_HDR_SIZE_CRC = UBI_EC_HDR_SIZE - 4
UBI_VID_HDR_SIZE_CRC = UBI_VID_HDR_SIZE - 4
UBI_VTBL_RECORD_SIZE = _VTBL_RECORD.size
UBI_VTBL_RECORD_SIZE_CRC = UBI_VTBL_RECORD_SIZE - 4


def ubi_crc32(data: bytes, crc: int = UBI_CRC32_INIT) -> int:
    """CRC-32 as UBI computes it: seeded with ``crc`` and without final inversion."""
    return (zlib.crc32(data, (crc ^ _MASK32) & _MASK32) ^ _MASK32) & _MASK32


def _pack(layout: struct.Struct, *values: int | bytes) -> bytes:
    try:
        body = layout.pack(*values, 0)
    except struct.error as exc:
        raise ValueError(f"cannot pack header: {exc}") from exc
    payload = body[:-4]
    return payload + struct.pack(">I", ubi_crc32(payload))


def _unpack(layout: struct.Struct, data: bytes, what: str) -> tuple:
    if len(data) < layout.size:
        raise ValueError(f"{what} needs {layout.size} bytes, got {len(data)}")
    fields = layout.unpack_from(data)
    expected = ubi_crc32(bytes(data[: layout.size - 4]))
    if fields[-1] != expected:
        raise ValueError(f"{what} CRC mismatch: {fields[-1]:#010x} != {expected:#010x}")
    return fields[:-1]


@dataclass
class EcHeader:
    """Erase counter header at the start of every physical eraseblock."""

    ec: int = 0
    vid_hdr_offset: int = 0
    data_offset: int = 0
    image_seq: int = 0
    version: int = UBI_VERSION
    magic: int = UBI_EC_HDR_MAGIC

    def pack(self) -> bytes:
        """Serialise the header, computing its CRC."""
        return _pack(
            _EC_HDR,
            self.magic,
            self.version,
            self.ec,
            self.vid_hdr_offset,
            self.data_offset,
            self.image_seq,
        )

    @classmethod
    def unpack(cls, data: bytes) -> EcHeader:
        """Parse a header, checking its magic and CRC."""
        magic, version, ec, vid_off, data_off, image_seq = _unpack(
            _EC_HDR, data, "erase counter header"
        )
        if magic != UBI_EC_HDR_MAGIC:
            raise ValueError(f"bad erase counter header magic {magic:#010x}")
        return cls(ec, vid_off, data_off, image_seq, version, magic)


@dataclass
class VidHeader:
    """Volume identifier header of a mapped eraseblock."""

    vol_id: int = 0
    lnum: int = 0
    vol_type: int = VidVolType.DYNAMIC
    copy_flag: int = 0
    compat: int = 0
    leb_ver: int = 0
    data_size: int = 0
    used_ebs: int = 0
    data_pad: int = 0
    data_crc: int = 0
    sqnum: int = 0
    version: int = UBI_VERSION
    magic: int = UBI_VID_HDR_MAGIC

    def pack(self) -> bytes:
        """Serialise the header, computing its CRC."""
        return _pack(
            _VID_HDR,
            self.magic,
            self.version,
            self.vol_type,
            self.copy_flag,
            self.compat,
            self.vol_id,
            self.lnum,
            self.leb_ver,
            self.data_size,
            self.used_ebs,
            self.data_pad,
            self.data_crc,
            self.sqnum,
        )

    @classmethod
    def unpack(cls, data: bytes) -> VidHeader:
        """Parse a header, checking its magic and CRC."""
        (
            magic,
            version,
            vol_type,
            copy_flag,
            compat,
            vol_id,
            lnum,
            leb_ver,
            data_size,
            used_ebs,
            data_pad,
            data_crc,
            sqnum,
        ) = _unpack(_VID_HDR, data, "volume identifier header")
        if magic != UBI_VID_HDR_MAGIC:
            raise ValueError(f"bad volume identifier header magic {magic:#010x}")
        return cls(
            vol_id,
            lnum,
            vol_type,
            copy_flag,
            compat,
            leb_ver,
            data_size,
            used_ebs,
            data_pad,
            data_crc,
            sqnum,
            version,
            magic,
        )


@dataclass
class VtblRecord:
    """One record of the volume table; an empty record is all zeroes."""

    reserved_pebs: int = 0
    alignment: int = 0
    data_pad: int = 0
    vol_type: int = 0
    upd_marker: int = 0
    name: str = ""
    flags: int = 0

    def pack(self) -> bytes:
        """Serialise the record, computing its CRC."""
        raw_name = self.name.encode("utf-8")
        if len(raw_name) > UBI_VOL_NAME_MAX:
            raise ValueError(f"volume name longer than {UBI_VOL_NAME_MAX} bytes")
        return _pack(
            _VTBL_RECORD,
            self.reserved_pebs,
            self.alignment,
            self.data_pad,
            self.vol_type,
            self.upd_marker,
            len(raw_name),
            raw_name,
            self.flags,
        )

    @classmethod
    def unpack(cls, data: bytes) -> VtblRecord:
        """Parse a record, checking its CRC and name length."""
        reserved, alignment, data_pad, vol_type, upd_marker, name_len, name, flags = _unpack(
            _VTBL_RECORD, data, "volume table record"
        )
        if name_len > UBI_VOL_NAME_MAX:
            raise ValueError(f"volume name length {name_len} exceeds {UBI_VOL_NAME_MAX}")
        return cls(
            reserved,
            alignment,
            data_pad,
            vol_type,
            upd_marker,
            name[:name_len].decode("utf-8", "replace"),
            flags,
        )