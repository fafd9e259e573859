import pytest

from fstools.ubi import UbiDriver, UbiVolume
from fstools.volume import FsType, VolumeError, VolumeType


@pytest.fixture
def sysfs(tmp_path):
    ubi_dir = tmp_path / "ubi"
    dev_dir = tmp_path / "dev"
    dev_dir.mkdir()
    for volid, volname in ((0, "rootfs"), (1, "rootfs_data")):
        voldir = ubi_dir / "ubi0" / f"ubi0_{volid}"
        voldir.mkdir(parents=True)
        (voldir / "name").write_text(volname + "\n")
        (voldir / "data_bytes").write_text("1048576\n")
        flat = ubi_dir / f"ubi0_{volid}"
        flat.mkdir()
        (flat / "name").write_text(volname + "\n")
        (flat / "data_bytes").write_text("1048576\n")
    (ubi_dir / "ubi_ctrl").write_text("")
    filesystems = tmp_path / "filesystems"
    filesystems.write_text("nodev\tproc\n\tubifs\n")
    return tmp_path, ubi_dir, dev_dir, filesystems


def _driver(ubi_dir, dev_dir, filesystems):
    return UbiDriver(ubi_dir=str(ubi_dir), dev_dir=str(dev_dir), filesystems=str(filesystems))


def test_find_volume_by_name(sysfs):
    _, ubi_dir, dev_dir, filesystems = sysfs
    driver = _driver(ubi_dir, dev_dir, filesystems)
    volume = driver.find("rootfs_data")
    assert isinstance(volume, UbiVolume)
    assert volume.ubi_num == 0
    assert volume.ubi_volid == 1
    assert volume.driver is driver


def test_find_unknown_name(sysfs):
    _, ubi_dir, dev_dir, filesystems = sysfs
    assert _driver(ubi_dir, dev_dir, filesystems).find("kernel") is None


def test_find_requires_ubifs_support(sysfs):
    tmp_path, ubi_dir, dev_dir, _ = sysfs
    other = tmp_path / "other"
    other.write_text("nodev\tproc\n\text4\n")
    assert _driver(ubi_dir, dev_dir, other).find("rootfs_data") is None


def test_find_skips_volumes_with_ubiblock(sysfs):
    _, ubi_dir, dev_dir, filesystems = sysfs
    (dev_dir / "ubiblock0_1").write_text("")
    assert _driver(ubi_dir, dev_dir, filesystems).find("rootfs_data") is None


def test_find_without_ubi_directory(tmp_path):
    filesystems = tmp_path / "filesystems"
    filesystems.write_text("\tubifs\n")
    driver = UbiDriver(ubi_dir=str(tmp_path / "gone"), dev_dir=str(tmp_path), filesystems=str(filesystems))
    assert driver.find("rootfs_data") is None


def test_init_reads_sysfs(sysfs):
    _, ubi_dir, dev_dir, filesystems = sysfs
    volume = _driver(ubi_dir, dev_dir, filesystems).find("rootfs_data")
    volume.init()
    assert volume.name == "rootfs_data"
    assert volume.size == 1048576
    assert volume.type == VolumeType.UBIVOLUME
    assert volume.blk == f"{dev_dir}/ubi0_1"


def test_init_without_data_bytes(sysfs):
    _, ubi_dir, dev_dir, _ = sysfs
    (ubi_dir / "ubi0_1" / "data_bytes").unlink()
    volume = UbiVolume(name="rootfs_data", ubi_num=0, ubi_volid=1, ubi_dir=str(ubi_dir), dev_dir=str(dev_dir))
    with pytest.raises(VolumeError):
        volume.init()


def test_init_without_name(tmp_path):
    volume = UbiVolume(name="rootfs_data", ubi_num=2, ubi_volid=0, ubi_dir=str(tmp_path))
    with pytest.raises(VolumeError):
        volume.init()


def test_identify_is_ubifs():
    assert UbiVolume(name="rootfs_data").identify() == FsType.UBIFS