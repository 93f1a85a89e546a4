# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import secrets
import uuid
from pathlib import Path
from typing import Optional

from docker_to_uefi.log import FormatFailure, complete_step, fail_as
from docker_to_uefi.run import run


@dataclasses.dataclass(frozen=True)
class Filesystem:
    device: Path
    fstype: str
    label: str
    uuid: str


def fat_volume_id() -> str:
    return secrets.token_hex(4).upper()


def format_fat_uuid(volid: str) -> str:
    """FAT has a 32-bit volume ID rather than a UUID. blkid and /dev/disk/by-uuid render it as XXXX-XXXX."""
    return f"{volid[:4]}-{volid[4:]}".upper()


def mkfs_vfat(device: Path, label: str, *, timeout: Optional[int] = None) -> Filesystem:
    volid = fat_volume_id()

    with fail_as(FormatFailure, f"Failed to create a FAT32 file system on {device}"):
        run(["mkfs.fat", "-F", "32", "-n", label, "-i", volid, device], timeout=timeout)

    return Filesystem(device, "vfat", label, format_fat_uuid(volid))


def mkfs_ext4(device: Path, label: str, *, timeout: Optional[int] = None) -> Filesystem:
    fsuuid = str(uuid.uuid4())

    with fail_as(FormatFailure, f"Failed to create an ext4 file system on {device}"):
        run(["mkfs.ext4", "-F", "-q", "-L", label, "-U", fsuuid, "-M", "/", device], timeout=timeout)

    return Filesystem(device, "ext4", label, fsuuid)


def format_partitions(
    esp: Path,
    root: Path,
    *,
    timeout: Optional[int] = None,
) -> tuple[Filesystem, Filesystem]:
    with complete_step("Formatting partitions…"):
        with complete_step(f"Formatting ESP {esp} as FAT32"):
            espfs = mkfs_vfat(esp, "ESP", timeout=timeout)
        with complete_step(f"Formatting root partition {root} as ext4"):
            rootfs = mkfs_ext4(root, "root", timeout=timeout)

    return espfs, rootfs
