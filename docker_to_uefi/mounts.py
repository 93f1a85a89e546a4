# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import logging
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Optional

from docker_to_uefi.log import MountFailure, fail_as
from docker_to_uefi.run import run
from docker_to_uefi.util import PathString, umask

# Special file systems the package manager and the bootloader tools expect inside the chroot, in the order
# they are bound. They are unbound in the opposite order.
API_VFS: tuple[str, ...] = ("proc", "dev", "sys")


def umount(where: Path, *, timeout: Optional[int] = None) -> None:
    run(["umount", "--no-mtab", where], timeout=timeout)
    logging.debug(f"Unmounted {where}")


@contextlib.contextmanager
def mount(
    what: PathString,
    where: Path,
    *,
    fstype: Optional[str] = None,
    options: Sequence[str] = (),
    timeout: Optional[int] = None,
) -> Iterator[Path]:
    with umask(~0o755):
        where.mkdir(parents=True, exist_ok=True)

    cmdline: list[PathString] = ["mount", "--no-mtab"]
    if fstype:
        cmdline += ["--types", fstype]
    if options:
        cmdline += ["--options", ",".join(options)]
    cmdline += [what, where]

    with fail_as(MountFailure, f"Failed to mount {what} on {where}"):
        run(cmdline, timeout=timeout)

    try:
        yield where
    finally:
        umount(where, timeout=timeout)


@contextlib.contextmanager
def bind_mount(src: Path, dst: Path, *, timeout: Optional[int] = None) -> Iterator[Path]:
    with umask(~0o755):
        dst.mkdir(parents=True, exist_ok=True)

    with fail_as(MountFailure, f"Failed to bind mount {src} on {dst}"):
        run(["mount", "--no-mtab", "--bind", src, dst], timeout=timeout)

    try:
        yield dst
    finally:
        umount(dst, timeout=timeout)
