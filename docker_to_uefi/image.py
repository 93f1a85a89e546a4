# SPDX-License-Identifier: LGPL-2.1-or-later

import concurrent.futures
import dataclasses
import hashlib
import json
import logging
import os
import subprocess
import tarfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Optional

from docker_to_uefi.config import Config
from docker_to_uefi.context import Context
from docker_to_uefi.log import ImageNotFound, LayerCorrupt, complete_step, fail_as, log_step
from docker_to_uefi.run import run
from docker_to_uefi.util import format_bytes

OCI_INDEX_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)


@dataclasses.dataclass(frozen=True)
class LayerArchive:
    digest: str
    path: Path


@dataclasses.dataclass(frozen=True)
class ContainerImage:
    name: str
    # Lowest layer first.
    layers: list[LayerArchive]


def image_present(config: Config) -> bool:
    return (
        run(
            [str(config.container_engine), "image", "inspect", config.image_name],
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            log=False,
            timeout=config.tool_timeout,
        ).returncode
        == 0
    )


def pull_image(config: Config) -> None:
    with fail_as(
        ImageNotFound,
        f"Image {config.image_name} could not be resolved",
        hint=f"Check the image reference, '{config.container_engine} images' lists the local images",
    ):
        run([str(config.container_engine), "pull", config.image_name], timeout=config.tool_timeout)


def save_image(config: Config, output: Path) -> None:
    with fail_as(ImageNotFound, f"Image {config.image_name} could not be saved"):
        run(
            [str(config.container_engine), "image", "save", "--output", output, config.image_name],
            timeout=config.tool_timeout,
        )


def unpack_archive(archive: Path, dest: Path) -> None:
    try:
        with tarfile.open(archive, "r:*") as tar:
            tar.extractall(dest, filter="data")
    except FileNotFoundError as e:
        raise ImageNotFound(f"Image archive {archive} does not exist") from e
    except (tarfile.TarError, OSError, EOFError) as e:
        raise LayerCorrupt(f"Image archive {archive} cannot be decoded: {e}") from e


def load_json(path: Path) -> Any:
    if not path.exists():
        return None

    try:
        return json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise LayerCorrupt(f"{path.name} of the image cannot be parsed: {e}") from e


def blob_path(layout: Path, digest: str) -> Path:
    algorithm, _, hexdigest = digest.partition(":")
    if not hexdigest or "/" in hexdigest:
        raise LayerCorrupt(f"Invalid digest {digest!r} in the image layout")

    return layout / "blobs" / algorithm / hexdigest


def layer_digest(relpath: str) -> Optional[str]:
    """The digest a layer is stored under, if the archive layout names it."""
    parts = Path(relpath).parts
    if len(parts) == 3 and parts[0] == "blobs":
        return f"{parts[1]}:{parts[2]}"

    return None


def docker_archive_layers(layout: Path, name: str) -> Optional[list[str]]:
    manifest = load_json(layout / "manifest.json")
    if manifest is None:
        return None

    if not isinstance(manifest, list) or not manifest:
        raise LayerCorrupt("manifest.json of the image does not describe any image")

    # An archive can hold multiple images, prefer the one that was asked for.
    for entry in manifest:
        if name in (entry.get("RepoTags") or []):
            break
    else:
        entry = manifest[0]

    return list(entry.get("Layers", []))


def oci_layout_layers(layout: Path) -> Optional[list[str]]:
    index = load_json(layout / "index.json")
    if index is None:
        return None

    # Follow nested indexes (multi-platform images) down to an image manifest.
    while index.get("mediaType") in OCI_INDEX_MEDIA_TYPES or "manifests" in index:
        manifests = index.get("manifests") or []
        if not manifests:
            raise LayerCorrupt("index.json of the image does not contain any manifests")

        descriptor = manifests[0]
        for m in manifests:
            if m.get("platform", {}).get("os", "linux") == "linux":
                descriptor = m
                break

        index = load_json(blob_path(layout, descriptor["digest"]))
        if index is None:
            raise LayerCorrupt(f"Manifest {descriptor['digest']} is missing from the image archive")

    return [
        str(blob_path(layout, layer["digest"]).relative_to(layout))
        for layer in index.get("layers", [])
    ]


def read_layers(layout: Path, name: str) -> list[str]:
    layers = docker_archive_layers(layout, name)
    if layers is None:
        layers = oci_layout_layers(layout)
    if layers is None:
        raise LayerCorrupt(
            "Image archive contains neither manifest.json nor index.json",
            hint="Image archives must be created with 'docker image save' or 'podman save'",
        )

    return layers


def sha256sum(path: Path) -> str:
    h = hashlib.sha256()

    with path.open("rb") as f:
        while chunk := f.read(1024**2):
            h.update(chunk)

    return f"sha256:{h.hexdigest()}"


def verify_layer(layout: Path, relpath: str) -> LayerArchive:
    path = layout / relpath
    if not path.resolve().is_relative_to(layout.resolve()):
        raise LayerCorrupt(f"Layer {relpath} points outside of the image archive")
    if not path.is_file():
        raise LayerCorrupt(f"Layer {relpath} is missing from the image archive")

    actual = sha256sum(path)
    expected = layer_digest(relpath)
    if expected and expected.startswith("sha256:") and expected != actual:
        raise LayerCorrupt(f"Layer {relpath} is corrupt, expected digest {expected} but got {actual}")

    return LayerArchive(expected or actual, path)


def verify_layers(layout: Path, layers: Sequence[str]) -> list[LayerArchive]:
    if not layers:
        return []

    with concurrent.futures.ThreadPoolExecutor(max_workers=min(len(layers), os.cpu_count() or 1)) as pool:
        return list(pool.map(lambda relpath: verify_layer(layout, relpath), layers))


def extract_image(context: Context) -> ContainerImage:
    config = context.config
    archive = config.image_archive()

    if archive:
        log_step(f"Using image archive {archive}")
    else:
        if not image_present(config):
            with complete_step(f"Pulling image {config.image_name}…"):
                pull_image(config)

        archive = context.workspace / "image.tar"
        with complete_step(f"Saving image {config.image_name}…"):
            save_image(config, archive)

    with complete_step(f"Unpacking {archive.name} ({format_bytes(archive.stat().st_size)})…"):
        unpack_archive(archive, context.image_dir)

    if archive.is_relative_to(context.workspace):
        archive.unlink()

    layers = verify_layers(context.image_dir, read_layers(context.image_dir, config.image_name))
    if not layers:
        logging.warning(f"Image {config.image_name} does not have any layers")

    for i, layer in enumerate(layers):
        logging.debug(f"Layer {i}: {layer.digest}")

    return ContainerImage(config.image_name, layers)
