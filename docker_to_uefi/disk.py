# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import dataclasses
import errno
import fcntl
import logging
import os
from collections.abc import Iterator
from pathlib import Path

from docker_to_uefi.log import OutputPathUnwritable, ResourceBusy
from docker_to_uefi.util import format_bytes


@dataclasses.dataclass
class OutputLock:
    """
    Exclusive ownership of the output file for the duration of a run.

    The lock is an flock() on the output file itself, so it is released by the kernel when the process dies,
    and a second run targeting the same file fails immediately instead of waiting.
    """

    path: Path
    fd: int
    created: bool
    truncated: bool = False
    complete: bool = False

    def __str__(self) -> str:
        return os.fspath(self.path)


def open_output(path: Path) -> tuple[int, bool]:
    if path.is_dir():
        raise OutputPathUnwritable(f"{path} is a directory")

    # Don't truncate here, the file might be locked by another run that is still writing it.
    flags = os.O_RDWR | os.O_CLOEXEC

    try:
        try:
            # Only claim the file as ours if this open is the one that created it.
            return os.open(path, flags | os.O_CREAT | os.O_EXCL, 0o644), True
        except FileExistsError:
            return os.open(path, flags), False
    except OSError as e:
        raise OutputPathUnwritable(
            f"Cannot open {path} for writing: {e.strerror}",
            hint="Make sure the parent directory exists and is writable",
        ) from e


def busy(path: Path) -> ResourceBusy:
    return ResourceBusy(
        f"{path} is in use by another run",
        hint="Wait for the other run to finish or pick a different output file",
    )


def acquire(fd: int, path: Path) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
            raise busy(path) from e
        raise

    # A run that failed removes its output while holding the lock. If that happened between our open() and
    # flock(), we locked an orphaned inode and the path belongs to nobody, or to a newer run.
    try:
        st = path.stat()
    except FileNotFoundError:
        st = None

    ours = os.fstat(fd)
    if st is None or (st.st_dev, st.st_ino) != (ours.st_dev, ours.st_ino):
        raise busy(path)


@contextlib.contextmanager
def lock_output(path: Path) -> Iterator[OutputLock]:
    fd, created = open_output(path)

    try:
        acquire(fd, path)
    except BaseException:
        # The lock was never ours, so neither is the file, even if our open() created it.
        os.close(fd)
        raise

    lock = OutputLock(path, fd, created)
    logging.debug(f"Acquired lock on {path}")

    try:
        yield lock
    finally:
        # Anything we wrote into the file is garbage if the run did not complete. The unlink must happen
        # while we still hold the lock, otherwise we could delete a file another run just locked.
        if not lock.complete and (lock.created or lock.truncated):
            logging.info(f"Removing incomplete {path}")
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

        os.close(fd)


def allocate_disk(lock: OutputLock, size: int) -> None:
    """Turn the locked output file into a sparse file of exactly size bytes."""
    try:
        # Drop any previous contents first so that no stale blocks of an older image survive.
        os.ftruncate(lock.fd, 0)
        lock.truncated = True
        os.ftruncate(lock.fd, size)
    except OSError as e:
        raise OutputPathUnwritable(
            f"Cannot allocate {format_bytes(size)} for {lock.path}: {e.strerror}"
        ) from e

    st = os.fstat(lock.fd)
    logging.info(
        f"Allocated {lock.path} with a size of {format_bytes(st.st_size)} "
        f"({format_bytes(st.st_blocks * 512)} on disk)"
    )
