# SPDX-License-Identifier: LGPL-2.1-or-later

import concurrent.futures
import dataclasses
import enum
import logging
import lzma
import os
import posixpath
import shutil
import tarfile
import zlib
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Optional

from docker_to_uefi.image import LayerArchive
from docker_to_uefi.log import LayerCorrupt, complete_step
from docker_to_uefi.util import StrEnum, listify

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"
OVERLAY_OPAQUE_XATTR = "SCHILY.xattr.trusted.overlay.opaque"
MAXSYMLINKS = 40

TAR_ERRORS = (tarfile.TarError, OSError, EOFError, zlib.error, lzma.LZMAError)


class EntryKind(StrEnum):
    file      = enum.auto()
    directory = enum.auto()
    symlink   = enum.auto()
    hardlink  = enum.auto()
    device    = enum.auto()
    fifo      = enum.auto()
    whiteout  = enum.auto()
    opaque    = enum.auto()  # fmt: skip

    def is_marker(self) -> bool:
        return self in (EntryKind.whiteout, EntryKind.opaque)


@dataclasses.dataclass(frozen=True)
class LayerEntry:
    """
    A single entry of a layer archive.

    The path is relative to the root of the image without a leading "./". For opaque markers the path is the
    directory whose lower contents are hidden, with "" standing for the root directory.
    """

    path: str
    kind: EntryKind


@dataclasses.dataclass(frozen=True)
class LayerIndex:
    layer: LayerArchive
    entries: list[LayerEntry]


@dataclasses.dataclass(frozen=True)
class MergedRootFS:
    path: Path
    # Maps every surviving path to the index of the layer that provides it.
    entries: dict[str, int]


def normalize_member_name(name: str) -> Optional[str]:
    if name.startswith("/"):
        return None

    path = posixpath.normpath(name)
    if path == "." or path == ".." or path.startswith("../"):
        return None

    return path


def classify(member: tarfile.TarInfo) -> list[LayerEntry]:
    path = normalize_member_name(member.name)
    if path is None:
        return []

    parent, base = posixpath.split(path)

    if base == OPAQUE_WHITEOUT:
        return [LayerEntry(parent, EntryKind.opaque)]
    if base.startswith(WHITEOUT_PREFIX):
        return [LayerEntry(posixpath.join(parent, base.removeprefix(WHITEOUT_PREFIX)), EntryKind.whiteout)]
    # overlayfs represents deleted files as 0:0 character devices.
    if member.ischr() and member.devmajor == 0 and member.devminor == 0:
        return [LayerEntry(path, EntryKind.whiteout)]

    if member.isdir():
        entries = [LayerEntry(path, EntryKind.directory)]
        if member.pax_headers.get(OVERLAY_OPAQUE_XATTR) == "y":
            entries.insert(0, LayerEntry(path, EntryKind.opaque))
        return entries
    if member.issym():
        return [LayerEntry(path, EntryKind.symlink)]
    if member.islnk():
        return [LayerEntry(path, EntryKind.hardlink)]
    if member.isdev():
        return [LayerEntry(path, EntryKind.device)]
    if member.isfifo():
        return [LayerEntry(path, EntryKind.fifo)]
    if member.isfile():
        return [LayerEntry(path, EntryKind.file)]

    logging.warning(f"Ignoring {member.name} of unsupported type {member.type!r}")
    return []


def index_layer(layer: LayerArchive) -> LayerIndex:
    entries = []

    try:
        with tarfile.open(layer.path, "r:*") as archive:
            for member in archive:
                entries += classify(member)
    except TAR_ERRORS as e:
        raise LayerCorrupt(f"Layer {layer.digest} cannot be decoded: {e}") from e

    logging.debug(f"Indexed {len(entries)} entries of layer {layer.digest}")
    return LayerIndex(layer, entries)


def index_layers(layers: Sequence[LayerArchive]) -> list[LayerIndex]:
    if not layers:
        return []

    with concurrent.futures.ThreadPoolExecutor(max_workers=min(len(layers), os.cpu_count() or 1)) as pool:
        # map() hands the results back in submission order, so the layer order is preserved.
        return list(pool.map(index_layer, layers))


def in_subtree(path: str, top: str) -> bool:
    """Whether path lies strictly below the directory top ("" is the root directory)."""
    return top == "" or path.startswith(f"{top}/")


def remove_subtree(state: dict[str, tuple[int, EntryKind]], top: str) -> None:
    for path in [p for p in state if in_subtree(p, top)]:
        del state[path]


def merge_layers(layers: Sequence[Sequence[LayerEntry]]) -> dict[str, int]:
    """
    Fold the entries of the given layers, lowest first, into a single tree.

    Deletion markers of a layer only ever apply to the layers below it, so they are applied before the
    additions of the same layer. The result maps every surviving path to the index of the layer that
    provides it.
    """
    state: dict[str, tuple[int, EntryKind]] = {}

    for i, entries in enumerate(layers):
        for entry in entries:
            if entry.kind == EntryKind.whiteout:
                state.pop(entry.path, None)
                remove_subtree(state, entry.path)
            elif entry.kind == EntryKind.opaque:
                remove_subtree(state, entry.path)

        for entry in entries:
            if entry.kind.is_marker():
                continue

            previous = state.get(entry.path)
            if previous and previous[1] == EntryKind.directory and entry.kind != EntryKind.directory:
                remove_subtree(state, entry.path)

            state[entry.path] = (i, entry.kind)

    return {path: i for path, (i, _) in state.items()}


def chase(root: Path, path: str, *, follow_final: bool = True) -> str:
    """
    Resolve the symlinks in path as if root were the root directory.

    Absolute symlinks restart at root and ".." never climbs above it, so the result always names a location
    inside root. It is returned relative to root.
    """
    parts = [p for p in path.split("/") if p and p != "."]
    resolved: list[str] = []
    links = 0

    while parts:
        part = parts.pop(0)

        if part == "..":
            if resolved:
                resolved.pop()
            continue

        candidate = root.joinpath(*resolved, part)
        if (parts or follow_final) and candidate.is_symlink():
            links += 1
            if links > MAXSYMLINKS:
                raise LayerCorrupt(f"Too many levels of symbolic links while resolving {path}")

            target = os.readlink(candidate)
            if target.startswith("/"):
                resolved = []
            parts = [p for p in target.split("/") if p and p != "."] + parts
            continue

        resolved.append(part)

    return "/".join(resolved)


def make_way(target: Path, member: tarfile.TarInfo) -> None:
    """Remove whatever a lower layer left at target, unless both are directories."""
    if target.is_symlink() or not target.exists():
        target.unlink(missing_ok=True)
    elif target.is_dir():
        if not member.isdir():
            shutil.rmtree(target)
    else:
        target.unlink()


@listify
def selected_members(
    archive: tarfile.TarFile,
    index: int,
    merged: Mapping[str, int],
) -> Iterator[tarfile.TarInfo]:
    for member in archive:
        path = normalize_member_name(member.name)
        if path is None or merged.get(path) != index:
            continue
        entries = classify(member)
        if not entries or all(e.kind.is_marker() for e in entries):
            continue

        yield member


def materialize_layer(layer: LayerArchive, index: int, merged: Mapping[str, int], root: Path) -> int:
    def rebase(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
        path = normalize_member_name(member.name)
        assert path is not None
        parent, base = posixpath.split(path)
        name = posixpath.join(chase(root, parent), base)

        make_way(root / name, member)

        if member.islnk():
            linkname = normalize_member_name(member.linkname)
            if linkname is None:
                raise LayerCorrupt(
                    f"Hard link {member.name} in layer {layer.digest} points outside of the image"
                )
            return member.replace(name=name, linkname=chase(root, linkname, follow_final=False), deep=False)

        return member.replace(name=name, deep=False)

    try:
        with tarfile.open(layer.path, "r:*") as archive:
            members = selected_members(archive, index, merged)
            # Ownership, permission bits and symlink targets are restored exactly as recorded. Device nodes
            # are recreated with mknod().
            archive.extractall(root, members=members, numeric_owner=True, filter=rebase)
    except TAR_ERRORS as e:
        raise LayerCorrupt(f"Layer {layer.digest} cannot be extracted: {e}") from e

    return len(members)


def merge_image(layers: Sequence[LayerArchive], root: Path) -> MergedRootFS:
    with complete_step(f"Indexing {len(layers)} layers…"):
        indexes = index_layers(layers)

    merged = merge_layers([i.entries for i in indexes])

    with complete_step(f"Merging {len(layers)} layers into {root}…", "Merged {0} entries") as step:
        for i, index in enumerate(indexes):
            n = materialize_layer(index.layer, i, merged, root)
            logging.debug(f"Extracted {n} entries from layer {i} ({index.layer.digest})")

        step.append(len(merged))

    return MergedRootFS(root, merged)
