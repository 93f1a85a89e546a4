# SPDX-License-Identifier: LGPL-2.1-or-later

import enum
import importlib
import platform
from collections.abc import Sequence
from typing import TYPE_CHECKING

from docker_to_uefi.log import die
from docker_to_uefi.util import StrEnum

if TYPE_CHECKING:
    from docker_to_uefi.context import Context


class Architecture(StrEnum):
    x86_64 = enum.auto()
    arm64  = enum.auto()  # fmt: skip

    @staticmethod
    def from_uname(s: str) -> "Architecture":
        a = {
            "x86_64"     : Architecture.x86_64,
            "amd64"      : Architecture.x86_64,
            "aarch64"    : Architecture.arm64,
            "aarch64_be" : Architecture.arm64,
            "arm64"      : Architecture.arm64,
        }.get(s)  # fmt: skip

        if not a:
            die(f"Architecture {s} is not supported, only x86-64 and arm64 disks can be built")

        return a

    def to_efi(self) -> str:
        return {
            Architecture.x86_64 : "x64",
            Architecture.arm64  : "aa64",
        }[self]  # fmt: skip

    def to_grub(self) -> str:
        return {
            Architecture.x86_64 : "x86_64-efi",
            Architecture.arm64  : "arm64-efi",
        }[self]  # fmt: skip

    def to_deb(self) -> str:
        return {
            Architecture.x86_64 : "amd64",
            Architecture.arm64  : "arm64",
        }[self]  # fmt: skip

    @classmethod
    def native(cls) -> "Architecture":
        return cls.from_uname(platform.machine())


class Flavor(StrEnum):
    debian = enum.auto()
    ubuntu = enum.auto()

    @property
    def installer(self) -> type["FlavorInstaller"]:
        importlib.import_module(f"docker_to_uefi.distributions.{self.name}")
        return FlavorInstaller.registry[self]


class FlavorInstaller:
    """Per-flavor knowledge needed to make a container root filesystem bootable."""

    registry: dict[Flavor, "type[FlavorInstaller]"] = {}

    def __init_subclass__(cls, flavor: Flavor):
        cls.registry[flavor] = cls

    @classmethod
    def pretty_name(cls) -> str:
        raise NotImplementedError

    @classmethod
    def kernel_packages(cls, arch: Architecture) -> list[str]:
        raise NotImplementedError

    @classmethod
    def bootloader_packages(cls, arch: Architecture) -> list[str]:
        raise NotImplementedError

    @classmethod
    def boot_packages(cls, arch: Architecture) -> list[str]:
        return [*cls.kernel_packages(arch), *cls.bootloader_packages(arch)]

    @classmethod
    def kernel_glob(cls) -> str:
        raise NotImplementedError

    @classmethod
    def initrd_glob(cls) -> str:
        raise NotImplementedError

    @classmethod
    def bootloader_id(cls) -> str:
        raise NotImplementedError

    @classmethod
    def sync(cls, context: "Context") -> None:
        raise NotImplementedError

    @classmethod
    def install_packages(cls, context: "Context", packages: Sequence[str]) -> None:
        raise NotImplementedError

    @classmethod
    def install_bootloader(cls, context: "Context") -> None:
        raise NotImplementedError

    @classmethod
    def update_initrd(cls, context: "Context") -> None:
        raise NotImplementedError

    @classmethod
    def update_bootloader_config(cls, context: "Context") -> None:
        raise NotImplementedError

    @classmethod
    def post_install(cls, context: "Context") -> None:
        pass
