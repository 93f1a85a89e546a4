# SPDX-License-Identifier: LGPL-2.1-or-later

from docker_to_uefi.context import Context
from docker_to_uefi.distributions import Architecture, Flavor, debian


class Installer(debian.Installer, flavor=Flavor.ubuntu):
    @classmethod
    def pretty_name(cls) -> str:
        return "Ubuntu"

    @classmethod
    def kernel_packages(cls, arch: Architecture) -> list[str]:
        return ["linux-image-generic"]

    @classmethod
    def bootloader_id(cls) -> str:
        return "ubuntu"

    @classmethod
    def post_install(cls, context: Context) -> None:
        # Container images of Ubuntu are minimized and ship a dpkg configuration that drops documentation
        # and the like. That is fine, but the unminimize hint printed on every login is not for a VM.
        (context.root / "etc/update-motd.d/60-unminimize").unlink(missing_ok=True)
