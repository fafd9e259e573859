import hashlib
from dataclasses import dataclass, field

import pytest

from fstools import snapshot
from fstools.snapshot import (
    HEADER_SIZE,
    OWRT,
    FileHeader,
    HeaderType,
    config_find,
    pad_file_size,
    sentinel_write,
    snapshot_next_free,
    snapshot_read_file,
    snapshot_write_file,
    valid_file_size,
    verify_file_hash,
)
from fstools.volume import Volume, VolumeError

BLOCK = 1024


@dataclass(eq=False)
class RamVolume(Volume):
    data: bytearray = field(default_factory=lambda: bytearray(b"\xff" * 8 * BLOCK))

    def read(self, offset, length):
        return bytes(self.data[offset:offset + length]).ljust(length, b"\xff")

    def write(self, offset, data):
        self.data[offset:offset + len(data)] = data

    def erase(self, offset, length):
        end = min(offset + length, len(self.data))
        if offset < end:
            self.data[offset:end] = b"\xff" * (end - offset)


@pytest.fixture
def volume():
    return RamVolume(name="rootfs_data", size=8 * BLOCK, block_size=BLOCK)


def test_header_round_trip():
    hdr = FileHeader(OWRT, HeaderType.CONF, 7, 123, bytes(range(16)))
    packed = hdr.pack()
    assert len(packed) == HEADER_SIZE
    assert packed[:4] == b"OWRT"
    assert FileHeader.unpack(packed) == hdr


def test_header_unpack_short():
    with pytest.raises(ValueError):
        FileHeader.unpack(b"OWRT")


def test_is_config():
    assert FileHeader(OWRT, HeaderType.CONF).is_config()
    assert not FileHeader(OWRT, HeaderType.DATA).is_config()


def test_valid_file_size():
    assert valid_file_size(1)
    assert valid_file_size(snapshot.MAX_FILE_SIZE)
    assert not valid_file_size(0)
    assert not valid_file_size(snapshot.MAX_FILE_SIZE + 1)


def test_pad_file_size_is_block_multiple():
    for size in (0, 1, BLOCK - HEADER_SIZE, BLOCK, 5000):
        padded = pad_file_size(BLOCK, size)
        assert padded % BLOCK == 0
        assert size + HEADER_SIZE <= padded < size + HEADER_SIZE + BLOCK


def test_verify_file_hash(tmp_path):
    path = tmp_path / "f"
    path.write_bytes(b"content")
    assert verify_file_hash(str(path), hashlib.md5(b"content").digest())
    assert not verify_file_hash(str(path), bytes(16))


def test_next_free_on_empty_volume(volume):
    assert snapshot_next_free(volume)[0] == 0


def test_write_then_read(volume, tmp_path):
    src = tmp_path / "src"
    src.write_bytes(b"x" * 1500)
    snapshot_write_file(volume, 0, str(src), 5, HeaderType.DATA)
    assert snapshot_next_free(volume) == (pad_file_size(BLOCK, 1500) // BLOCK, 5)

    dst = tmp_path / "dst"
    result = snapshot_read_file(volume, 0, str(dst), HeaderType.DATA)
    assert dst.read_bytes() == b"x" * 1500
    assert result == 1


def test_read_wrong_type(volume, tmp_path):
    src = tmp_path / "src"
    src.write_bytes(b"abc")
    snapshot_write_file(volume, 0, str(src), 1, HeaderType.DATA)
    assert snapshot_read_file(volume, 0, str(tmp_path / "d"), HeaderType.CONF) is None


def test_write_too_big(volume, tmp_path):
    src = tmp_path / "src"
    src.write_bytes(b"y" * (9 * BLOCK))
    with pytest.raises(VolumeError):
        snapshot_write_file(volume, 0, str(src), 1, HeaderType.DATA)


def test_sentinel_write_and_find(volume, tmp_path, monkeypatch):
    archive = tmp_path / "config.tar.gz"
    archive.write_bytes(b"cfg")
    monkeypatch.setattr(snapshot, "CONFIG_ARCHIVE", str(archive))
    sentinel_write(volume, 9)
    block, _conf, sentinel = config_find(volume)
    assert block == 7
    assert sentinel.is_config()
    assert sentinel.seq == 9
    assert sentinel.md5 == hashlib.md5(b"cfg").digest()


def test_sentinel_write_missing_archive(volume, tmp_path, monkeypatch):
    monkeypatch.setattr(snapshot, "CONFIG_ARCHIVE", str(tmp_path / "missing"))
    with pytest.raises(VolumeError):
        sentinel_write(volume, 1)