import subprocess
from unittest import mock

import pytest

from fstools import mount as mount_mod
from fstools.mount import (
    MountError,
    fopivot,
    mount,
    mount_move,
    pivot,
    selinux_restorecon,
    umount,
)


def _done(code):
    return subprocess.CompletedProcess(args=[], returncode=code)


class _Stop(Exception):
    def __init__(self, argv):
        super().__init__("stopped")
        self.argv = argv


def _stop_run(argv, *args, **kwargs):
    raise _Stop(list(argv))


def test_mount_builds_command():
    with mock.patch("subprocess.run", side_effect=_stop_run):
        with pytest.raises(_Stop) as caught:
            mount("tmpfs", "/x", "tmpfs", ("noatime", "mode=0755"))
    assert caught.value.argv == [
        "mount", "-t", "tmpfs", "-o", "noatime,mode=0755", "tmpfs", "/x",
    ]


def test_mount_move_option_uses_move_flag():
    with mock.patch("subprocess.run", side_effect=_stop_run):
        with pytest.raises(_Stop) as caught:
            mount("/a", "/b", None, ("noatime", "move"))
    argv = caught.value.argv
    assert argv[1] == "--move"
    assert argv[-2:] == ["/a", "/b"]


def test_mount_failure_raises():
    with mock.patch("subprocess.run", return_value=_done(32)):
        with pytest.raises(MountError):
            mount("tmpfs", "/x", "tmpfs")


def test_mount_missing_binary_raises():
    with mock.patch("subprocess.run", side_effect=FileNotFoundError("mount")):
        with pytest.raises(MountError):
            mount("tmpfs", "/x")


def test_umount_detach():
    with mock.patch("subprocess.run", side_effect=_stop_run):
        with pytest.raises(_Stop) as caught:
            umount("/x", detach=True)
    assert caught.value.argv == ["umount", "-l", "/x"]


def test_umount_failure_raises():
    with mock.patch("subprocess.run", return_value=_done(1)):
        with pytest.raises(MountError):
            umount("/x")


def test_mount_move_requires_directories(tmp_path):
    (tmp_path / "old" / "d").mkdir(parents=True)
    with mock.patch("subprocess.run", return_value=_done(0)) as run:
        with pytest.raises(MountError):
            mount_move(str(tmp_path / "old"), str(tmp_path / "new"), "/d")
    assert run.call_count == 0


def test_mount_move_moves(tmp_path):
    old = tmp_path / "old"
    new = tmp_path / "new"
    (old / "d").mkdir(parents=True)
    (new / "d").mkdir(parents=True)
    with mock.patch("subprocess.run", return_value=_done(0)) as run:
        mount_move(str(old), str(new), "/d")
    argv = run.call_args.args[0]
    assert argv[-2:] == [f"{old}/d", f"{new}/d"]
    assert "--move" in argv


def test_pivot_fails_without_proc_in_new_root(tmp_path):
    with mock.patch("subprocess.run", return_value=_done(0)) as run:
        with pytest.raises(MountError):
            pivot(str(tmp_path), "/rom")
    assert run.call_count == 0


def test_pivot_runs_pivot_root(tmp_path):
    (tmp_path / "proc").mkdir()
    new = str(tmp_path)
    with mock.patch("subprocess.run", return_value=_done(0)) as run:
        pivot(new, "/nonexistent-old-root")
    calls = [c.args[0] for c in run.call_args_list]
    assert calls[0][-2:] == ["/proc", f"{new}/proc"]
    assert calls[1] == ["pivot_root", new, f"{new}/nonexistent-old-root"]


def test_pivot_root_failure_raises(tmp_path):
    (tmp_path / "proc").mkdir()
    with mock.patch("subprocess.run", side_effect=[_done(0), _done(1)]):
        with pytest.raises(MountError):
            pivot(str(tmp_path), "/rom")


def test_selinux_restorecon_skipped_without_binary(tmp_path):
    with mock.patch.object(mount_mod, "RESTORECON", str(tmp_path / "missing")):
        with mock.patch("subprocess.run", side_effect=_stop_run) as run:
            result = selinux_restorecon("/overlay")
    assert not result
    assert run.call_count == 0


def test_selinux_restorecon_runs_binary(tmp_path):
    tool = tmp_path / "restorecon"
    tool.write_text("")
    with mock.patch.object(mount_mod, "RESTORECON", str(tool)):
        with mock.patch("subprocess.run", side_effect=_stop_run):
            with pytest.raises(_Stop) as caught:
                selinux_restorecon("/overlay")
    assert caught.value.argv == [str(tool), "/overlay"]


def test_fopivot_requires_overlay_support(tmp_path):
    filesystems = tmp_path / "filesystems"
    filesystems.write_text("nodev\ttmpfs\n\text4\n")
    with mock.patch.object(mount_mod, "FILESYSTEMS", str(filesystems)):
        with mock.patch("subprocess.run", return_value=_done(0)) as run:
            with pytest.raises(MountError):
                fopivot(str(tmp_path / "rw"), "/rom")
    assert run.call_count == 0


def test_fopivot_prepares_overlay_and_mounts(tmp_path):
    filesystems = tmp_path / "filesystems"
    filesystems.write_text("nodev\toverlay\n")
    rw = tmp_path / "rw"
    rw.mkdir()
    (rw / "sysupgrade.tgz").write_bytes(b"backup")

    def fake_run(argv, check=False):
        return _done(0 if "overlay" in argv else 1)

    with mock.patch.object(mount_mod, "FILESYSTEMS", str(filesystems)), \
            mock.patch.object(mount_mod, "RESTORECON", str(tmp_path / "missing")), \
            mock.patch("subprocess.run", side_effect=fake_run) as run:
        with pytest.raises(MountError):
            fopivot(str(rw), "/rom")

    assert (rw / "upper").is_dir()
    assert (rw / "work").is_dir()
    assert (rw / "upper" / "sysupgrade.tgz").read_bytes() == b"backup"
    assert not (rw / "sysupgrade.tgz").exists()
    first = run.call_args_list[0].args[0]
    assert first[-2:] == [f"overlayfs:{rw}", "/mnt"]
    assert f"lowerdir=/,upperdir={rw}/upper,workdir={rw}/work" in first[first.index("-o") + 1]