import os

import pytest

from fstools.mount import MountError
from fstools.overlay import (
    foreachdir,
    fs_state_get,
    fs_state_set,
    handle_whiteout,
    jffs2_switch,
    mount_overlay,
    overlay_delete,
    overlay_fs_name,
)
from fstools.volume import FsState, FsType, Volume


def test_foreachdir_is_depth_first_and_sorted(tmp_path):
    (tmp_path / "b" / "c").mkdir(parents=True)
    (tmp_path / "a").mkdir()
    (tmp_path / "file").write_text("x")
    seen = []
    foreachdir(str(tmp_path), seen.append)
    assert seen == [
        f"{tmp_path}/a/",
        f"{tmp_path}/b/c/",
        f"{tmp_path}/b/",
        str(tmp_path),
    ]


def test_foreachdir_does_not_follow_symlinks(tmp_path):
    target = tmp_path / "target"
    (target / "inner").mkdir(parents=True)
    root = tmp_path / "root"
    root.mkdir()
    (root / "link").symlink_to(target)
    seen = []
    foreachdir(str(root), seen.append)
    assert f"{root}/link/inner/" not in seen
    assert seen[-1] == str(root)


def test_overlay_delete_keeps_sysupgrade(tmp_path):
    root = tmp_path / "ov"
    (root / "etc" / "config").mkdir(parents=True)
    (root / "etc" / "config" / "network").write_text("x")
    (root / "sysupgrade.tgz").write_bytes(b"tgz")
    (root / "other").write_text("x")
    overlay_delete(str(root), True)
    assert sorted(os.listdir(root)) == ["sysupgrade.tgz"]


def test_overlay_delete_removes_everything(tmp_path):
    root = tmp_path / "ov"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "passwd").write_text("x")
    (root / "sysupgrade.tgz").write_bytes(b"tgz")
    (root / "dangling").symlink_to(tmp_path / "nowhere")
    overlay_delete(str(root), False)
    assert not root.exists()


def test_handle_whiteout_reports_targets(tmp_path):
    directory = tmp_path / "ov"
    directory.mkdir()
    (directory / "gone").symlink_to("(overlay-whiteout)")
    (directory / "kept").symlink_to("elsewhere")
    (directory / "plain").write_text("x")
    path = f"{directory}/gone"
    result = handle_whiteout(f"{directory}/")
    assert result == ["/" + path.split("/", 2)[2]]


def test_handle_whiteout_missing_directory(tmp_path):
    assert handle_whiteout(f"{tmp_path}/missing/") == []


@pytest.mark.parametrize(
    "fstype, name",
    [
        (FsType.EXT4, "ext4"),
        (FsType.F2FS, "f2fs"),
        (FsType.UBIFS, "ubifs"),
        (FsType.JFFS2, "jffs2"),
        (FsType.NONE, "jffs2"),
        (None, "jffs2"),
    ],
)
def test_overlay_fs_name(fstype, name):
    assert overlay_fs_name(fstype) == name


def test_fs_state_unknown_without_link(tmp_path):
    assert fs_state_get(str(tmp_path)) == FsState.UNKNOWN


@pytest.mark.parametrize("state", list(FsState))
def test_fs_state_round_trip(tmp_path, state):
    fs_state_set(str(tmp_path), FsState.PENDING if state != FsState.PENDING else FsState.READY)
    fs_state_set(str(tmp_path), state)
    assert fs_state_get(str(tmp_path)) == state


def test_fs_state_stored_as_symlink(tmp_path):
    fs_state_set(str(tmp_path), FsState.READY)
    assert os.readlink(tmp_path / ".fs_state") == str(int(FsState.READY))


@pytest.mark.parametrize("value", ["7", "-1", "junk"])
def test_fs_state_invalid_values_are_unknown(tmp_path, value):
    os.symlink(value, tmp_path / ".fs_state")
    assert fs_state_get(str(tmp_path)) == FsState.UNKNOWN


def test_fs_state_leading_digits(tmp_path):
    os.symlink("1abc", tmp_path / ".fs_state")
    assert fs_state_get(str(tmp_path)) == FsState.PENDING


def test_mount_overlay_without_volume():
    with pytest.raises(MountError):
        mount_overlay(None)


class _RecordingVolume(Volume):
    def __post_init__(self):
        self.calls = []

    def init(self):
        self.calls.append("init")

    def identify(self):
        self.calls.append("identify")
        return FsType.EXT4