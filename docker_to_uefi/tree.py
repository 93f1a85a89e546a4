# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional, Union

from docker_to_uefi.config import ROOT_HEADROOM
from docker_to_uefi.log import InsufficientSpace, MountFailure, complete_step
from docker_to_uefi.run import run
from docker_to_uefi.util import PathString, format_bytes


def dir_size(path: Union[Path, os.DirEntry[str]]) -> int:
    dir_sum = 0
    for entry in os.scandir(path):
        if entry.is_symlink():
            # We can ignore symlinks because they either point into our tree,
            # in which case we'll include the size of target directory anyway,
            # or outside, in which case we don't need to.
            continue
        elif entry.is_file():
            dir_sum += entry.stat().st_blocks * 512
        elif entry.is_dir():
            dir_sum += dir_size(entry)
    return dir_sum


def free_space(path: Path) -> int:
    st = os.statvfs(path)
    return st.f_bavail * st.f_frsize


def check_space(src: Path, dst: Path, *, headroom: int = ROOT_HEADROOM) -> int:
    """Make sure the file system mounted at dst can hold the tree at src with some space to spare."""
    needed = dir_size(src)
    available = free_space(dst)

    logging.debug(f"{src} needs {format_bytes(needed)}, {dst} has {format_bytes(available)} available")

    if needed + headroom > available:
        raise InsufficientSpace(
            f"The root partition has {format_bytes(available)} available, but the root file system needs "
            f"{format_bytes(needed)} plus {format_bytes(headroom)} of headroom",
            hint="Increase --disk-size",
        )

    return needed


def copy_tree(src: Path, dst: Path, *, timeout: Optional[int] = None) -> None:
    cmdline: list[PathString] = [
        "cp",
        "--recursive",
        "--no-dereference",
        "--preserve=mode,ownership,timestamps,links,xattr",
        "--reflink=auto",
        # Copy the contents of src into dst, dst is a mount point that already exists.
        "--no-target-directory",
        src,
        dst,
    ]

    try:
        run(cmdline, timeout=timeout)
    except subprocess.CalledProcessError as e:
        # cp does not tell us why it failed in its exit status, so look at the destination.
        if free_space(dst) < ROOT_HEADROOM:
            raise InsufficientSpace(
                f"The root partition ran out of space while copying {src}",
                hint="Increase --disk-size",
            ) from e

        raise MountFailure(
            f"Failed to copy {src} to {dst}: cp returned non-zero exit code {e.returncode}"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise MountFailure(f"Copying {src} to {dst} timed out after {e.timeout} seconds") from e


def populate_tree(src: Path, dst: Path, *, timeout: Optional[int] = None) -> None:
    with complete_step(f"Copying root file system to {dst}…", "Copied {0} to the root partition") as step:
        size = check_space(src, dst)
        copy_tree(src, dst, timeout=timeout)

        step.append(format_bytes(size))


def rmtree(*paths: Path) -> None:
    filtered = sorted({p.absolute() for p in paths if p.exists() or p.is_symlink()})
    if filtered:
        run(["rm", "-rf", "--one-file-system", "--", *filtered])
