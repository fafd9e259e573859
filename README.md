# fstools

Library for setting up the root filesystem of an embedded Linux device:
finding the writable data volume on flash or disk, identifying what is on
it, formatting it when needed and switching the running system onto an
overlay on top of the read-only root.

## Installation

    pip install .

There are no third-party dependencies. Most operations need root
privileges on Linux, and several of them run system programs: `mount`,
`umount` and `pivot_root` for mount handling, `mkfs.ext4` or `mkfs.f2fs`,
`dd` and `gzip` for formatting, `/sbin/block`, `/sbin/kmodloader`,
`/sbin/restorecon` and `/sbin/snapshot` where those steps need them.

## Volumes and drivers

A volume is found by name through the registered drivers, tried in order
of descending priority. Each driver registers itself in the default
registry when its module is imported:

| Module              | Driver     | Priority | Backing storage                             |
|---------------------|------------|----------|---------------------------------------------|
| `fstools.fit`       | `fit`      | 30       | `/dev/fit0`, `/dev/fitrw`                   |
| `fstools.partname`  | `partname` | 25       | partition with a matching `PARTNAME`        |
| `fstools.ubi`       | `ubi`      | 20       | UBI volume under `/sys/class/ubi`           |
| `fstools.mtd`       | `mtd`      | 10       | MTD partition listed in `/proc/mtd`         |
| `fstools.rootdisk`  | `rootdisk` | 0        | space after the squashfs image on root disk |

```python
import fstools.fit, fstools.partname, fstools.ubi, fstools.mtd, fstools.rootdisk
from fstools.volume import FsType, volume_find

volume = volume_find("rootfs_data")
if volume is not None:
    volume.init()
    if volume.identify() == FsType.EXT4:
        ...
```

`fstools.volume.DriverRegistry` can hold a separate set of drivers; its
`find(name)` asks each driver in turn. Volume operations (`init`,
`identify`, `read`, `write`, `erase`, `erase_all`) raise
`fstools.volume.VolumeError` when they fail or are not supported.

`fstools.common` holds `block_file_identify` (gzip, `0xdeadc0de`, F2FS
and ext4 markers) and `block_volume_format`, which extracts a gzip
configuration backup to `/tmp/sysupgrade.tar` if one is present and then
formats the volume with F2FS (above about 100 GB) or ext4.

`fstools.find` reads `/proc/mounts`, `/proc/self/mountinfo` and
`/proc/filesystems`: `find_mount`, `find_mount_point`,
`find_overlay_mount` and `find_filesystem`. Each takes the table's path as
an optional last argument.

## Overlay and extroot

`fstools.overlay.mount_overlay(volume)` mounts the data volume on
`/tmp/overlay`, tries an extroot set-up through
`fstools.extroot.mount_extroot`, and otherwise pivots the root onto an
overlayfs, falling back to a RAM overlay (`fstools.mount.ramoverlay`) when
that fails. `fstools.overlay.jffs2_switch(volume)` moves a running RAM
overlay onto the data volume once it is ready.

`fs_state_get` and `fs_state_set` read and write the `.fs_state` symbolic
link that records whether an overlay has been fully initialised
(`FsState`). `overlay_delete` empties an overlay, optionally keeping
`sysupgrade.tgz`; `handle_whiteout` removes files hidden by whiteout links.

Mount failures raise `fstools.mount.MountError`.

## Snapshots

`fstools.snapshot` implements the block-based snapshot layout on flash:
`FileHeader` records (`OWRT` magic, `HeaderType.DATA`/`HeaderType.CONF`,
sequence number, length and MD5), `snapshot_write_file`,
`snapshot_read_file`, `sentinel_write`, `volatile_write`, `snapshot_sync`
and `mount_snapshot`.

## UBI on-flash structures

`fstools.ubi_media` packs and unpacks UBI erase-counter headers
(`EcHeader`), volume identifier headers (`VidHeader`) and volume table
records (`VtblRecord`). `pack` computes the CRC with `ubi_crc32`;
`unpack` raises `ValueError` on a short buffer, a bad CRC or a bad magic.

## What is not included

The package is a library only. It installs no commands: there is no boot
program that mounts the root, no tool for resetting the data volume and
no tool for taking or unpacking snapshots. `mount_snapshot` and
`mount_extroot` expect such programs (`/sbin/snapshot`, `/sbin/block`) to
be present on the system.

## Tests

    pip install .[test]
    pytest