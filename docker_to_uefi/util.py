# SPDX-License-Identifier: LGPL-2.1-or-later

import enum
import functools
import os
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import IO, Any, Callable, TypeVar, Union

T = TypeVar("T")

# Borrowed from https://github.com/python/typeshed/blob/3d14016085aed8bcf0cf67e9e5a70790ce1ad8ea/stdlib/3/subprocess.pyi#L24
_FILE = Union[None, int, IO[Any]]
PathString = Union[Path, str]


def listify(f: Callable[..., Iterable[T]]) -> Callable[..., list[T]]:
    def wrapper(*args: Any, **kwargs: Any) -> list[T]:
        return list(f(*args, **kwargs))

    return functools.update_wrapper(wrapper, f)


def format_bytes(num_bytes: int) -> str:
    if num_bytes >= 1024**3:
        return f"{num_bytes / 1024**3:0.1f}G"
    if num_bytes >= 1024**2:
        return f"{num_bytes / 1024**2:0.1f}M"
    if num_bytes >= 1024:
        return f"{num_bytes / 1024:0.1f}K"

    return f"{num_bytes}B"


class umask:
    def __init__(self, mask: int) -> None:
        self.mask = mask

    def __enter__(self) -> None:
        self.mask = os.umask(self.mask)

    def __exit__(self, *args: object, **kwargs: object) -> None:
        os.umask(self.mask)


def patch_file(path: Path, patcher: Callable[[str], str]) -> None:
    """Rewrite @path line by line through @patcher, keeping ownership and permissions."""
    st = path.stat()
    tmp = path.with_name(f".{path.name}.tmp")

    with path.open() as i, umask(~0o600), tmp.open("w") as o:
        for line in i:
            o.write(patcher(line))

    os.chmod(tmp, st.st_mode)
    os.chown(tmp, st.st_uid, st.st_gid)
    tmp.replace(path)


class StrEnum(enum.Enum):
    def __str__(self) -> str:
        assert isinstance(self.value, str)
        return self.value

    # Used by enum.auto() to get the next value.
    @staticmethod
    def _generate_next_value_(name: str, start: int, count: int, last_values: Sequence[str]) -> str:
        return name.replace("_", "-")


def unique(seq: Sequence[T]) -> list[T]:
    return list(dict.fromkeys(seq))
