import pytest

from fstools.common import DEADCODE_MAGIC, EXT4_MAGIC, GZIP_MAGIC
from fstools.fit import FitDriver, FitVolume
from fstools.volume import FsType, VolumeError, VolumeType


def _ext4_image():
    data = bytearray(0x1000)
    data[0x438:0x43A] = EXT4_MAGIC.to_bytes(2, "little")
    return bytes(data)


@pytest.fixture
def layout(tmp_path):
    dev = tmp_path / "dev"
    dev.mkdir()
    block = tmp_path / "block"
    block.mkdir()
    return dev, block


def _driver(dev, block):
    return FitDriver(fit0=str(dev / "fit0"), fitrw=str(dev / "fitrw"), block_dir=str(block))


def test_find_rootfs_data(layout):
    dev, block = layout
    (dev / "fitrw").write_bytes(_ext4_image())
    driver = _driver(dev, block)
    volume = driver.find("rootfs_data")
    assert isinstance(volume, FitVolume)
    assert volume.blk == str(dev / "fitrw")
    assert volume.device == "fitrw"
    assert volume.name == "rootfs_data"
    assert volume.driver is driver


def test_find_rootfs_uses_fit0(layout):
    dev, block = layout
    (dev / "fit0").write_bytes(b"")
    volume = _driver(dev, block).find("rootfs")
    assert volume.blk == str(dev / "fit0")


def test_find_unknown_name(layout):
    dev, block = layout
    (dev / "fit0").write_bytes(b"")
    assert _driver(dev, block).find("kernel") is None


def test_find_missing_device(layout):
    dev, block = layout
    assert _driver(dev, block).find("rootfs_data") is None


@pytest.mark.parametrize(
    "content, expected",
    [
        (DEADCODE_MAGIC + bytes(0x1000), FsType.DEADCODE),
        (GZIP_MAGIC + bytes(0x1000), FsType.TARGZ),
        (_ext4_image(), FsType.EXT4),
        (bytes(0x1000), FsType.NONE),
    ],
)
def test_identify(layout, content, expected):
    dev, block = layout
    (dev / "fitrw").write_bytes(content)
    assert _driver(dev, block).find("rootfs_data").identify() == expected


def test_identify_missing_file_is_none(tmp_path):
    volume = FitVolume(name="rootfs_data", blk=str(tmp_path / "gone"), device="gone")
    assert volume.identify() == FsType.NONE


def test_init_reads_size_in_sectors(layout):
    dev, block = layout
    (dev / "fitrw").write_bytes(_ext4_image())
    (block / "fitrw").mkdir()
    (block / "fitrw" / "size").write_text("8\n")
    volume = _driver(dev, block).find("rootfs_data")
    volume.init()
    assert volume.size == 8 * 512
    assert volume.type == VolumeType.BLOCKDEV
    assert volume.blk == str(dev / "fitrw")


def test_init_without_size_fails(layout):
    dev, block = layout
    (dev / "fitrw").write_bytes(_ext4_image())
    volume = _driver(dev, block).find("rootfs_data")
    with pytest.raises(VolumeError):
        volume.init()