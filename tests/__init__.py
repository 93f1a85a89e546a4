# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import hashlib
import io
import json
import os
import subprocess
import tarfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Callable, Optional

from docker_to_uefi.run import CompletedProcess
from docker_to_uefi.util import PathString

Member = tuple[tarfile.TarInfo, Optional[bytes]]


def tar_file(name: str, content: bytes = b"", mode: int = 0o644) -> Member:
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = mode
    return info, content


def tar_dir(name: str, mode: int = 0o755, *, opaque: bool = False) -> Member:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    if opaque:
        info.pax_headers = {"SCHILY.xattr.trusted.overlay.opaque": "y"}
    return info, None


def tar_symlink(name: str, target: str) -> Member:
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    return info, None


def tar_hardlink(name: str, target: str) -> Member:
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE
    info.linkname = target
    return info, None


def tar_chardev(name: str, major: int = 0, minor: int = 0) -> Member:
    info = tarfile.TarInfo(name)
    info.type = tarfile.CHRTYPE
    info.devmajor = major
    info.devminor = minor
    return info, None


def write_tar(path: Path, members: Sequence[Member]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)

    with tarfile.open(path, "w", format=tarfile.PAX_FORMAT) as tar:
        for info, content in members:
            tar.addfile(info, io.BytesIO(content) if content is not None else None)

    return path


def write_image_archive(
    path: Path,
    layers: Sequence[Sequence[Member]],
    *,
    tag: str = "debian:latest",
) -> list[str]:
    """Write an archive in the format of 'docker image save' and return the digests of its layers."""
    blobs = {}
    for members in layers:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for info, content in members:
                tar.addfile(info, io.BytesIO(content) if content is not None else None)

        blobs[f"blobs/sha256/{hashlib.sha256(buf.getvalue()).hexdigest()}"] = buf.getvalue()

    manifest = [{"Config": "config.json", "RepoTags": [tag], "Layers": list(blobs)}]

    write_tar(
        path,
        [
            tar_dir("blobs"),
            tar_dir("blobs/sha256"),
            *(tar_file(name, data) for name, data in blobs.items()),
            tar_file("config.json", b"{}"),
            tar_file("manifest.json", json.dumps(manifest).encode()),
        ],
    )

    return [name.removeprefix("blobs/").replace("/", ":") for name in blobs]


@dataclasses.dataclass
class FakeRun:
    """Stands in for run() and records every command line it is asked to run."""

    handler: Optional[Callable[[list[str], dict[str, Any]], Optional[str]]] = None
    fail: Callable[[list[str]], bool] = lambda cmdline: False
    calls: list[list[str]] = dataclasses.field(default_factory=list)

    def __call__(self, cmdline: Sequence[PathString], **kwargs: Any) -> CompletedProcess:
        cmd = [os.fspath(c) for c in cmdline]
        self.calls.append(cmd)

        if self.fail(cmd):
            if kwargs.get("check", True):
                raise subprocess.CalledProcessError(1, cmd)
            return CompletedProcess(cmd, 1, "", "")

        stdout = self.handler(cmd, kwargs) if self.handler else None
        return CompletedProcess(cmd, 0, stdout or "", "")

    def commands(self) -> list[str]:
        return [c[0] for c in self.calls]


@dataclasses.dataclass
class FakeChroot:
    """Stands in for run_in_chroot() and leaves behind what the Debian boot tooling would."""

    kernel_version: str = "6.1.0-13-amd64"
    install_kernel: bool = True
    fail: Callable[[list[str]], bool] = lambda cmdline: False
    calls: list[list[str]] = dataclasses.field(default_factory=list)

    def __call__(self, root: Path, cmdline: Sequence[PathString], **kwargs: Any) -> CompletedProcess:
        cmd = [os.fspath(c) for c in cmdline]
        self.calls.append(cmd)

        if self.fail(cmd):
            raise subprocess.CalledProcessError(100, cmd)

        boot = root / "boot"

        if cmd[0] == "apt-get" and "install" in cmd:
            assert (root / "usr/sbin/policy-rc.d").read_text() == "#!/bin/sh\nexit 101\n"
            if self.install_kernel:
                boot.mkdir(exist_ok=True)
                (boot / f"vmlinuz-{self.kernel_version}").write_text("kernel")
        elif cmd[0] == "grub-install":
            assert (boot / "grub/device.map").exists()
            target = next(c for c in cmd if c.startswith("--target=")).removeprefix("--target=")
            efi = {"x86_64-efi": "BOOTX64.EFI", "arm64-efi": "BOOTAA64.EFI"}[target]
            (boot / "efi/EFI/BOOT").mkdir(parents=True, exist_ok=True)
            (boot / "efi/EFI/BOOT" / efi).write_bytes(b"MZ")
        elif cmd[0] == "update-initramfs":
            (boot / f"initrd.img-{self.kernel_version}").write_text("initrd")
        elif cmd[0] == "grub-mkconfig":
            assert (boot / "grub/device.map").exists()
            (boot / "grub/grub.cfg").write_text("menuentry 'Debian GNU/Linux' {}\n")

        return CompletedProcess(cmd, 0, "", "")

    def commands(self) -> list[str]:
        return [c[0] for c in self.calls]
