# SPDX-License-Identifier: LGPL-2.1-or-later

from collections.abc import Sequence

from docker_to_uefi.context import Context
from docker_to_uefi.distributions import Architecture, Flavor, FlavorInstaller
from docker_to_uefi.run import run_in_chroot
from docker_to_uefi.util import umask


class Installer(FlavorInstaller, flavor=Flavor.debian):
    @classmethod
    def pretty_name(cls) -> str:
        return "Debian"

    @classmethod
    def kernel_packages(cls, arch: Architecture) -> list[str]:
        return [f"linux-image-{arch.to_deb()}"]

    @classmethod
    def bootloader_packages(cls, arch: Architecture) -> list[str]:
        return [
            f"grub-efi-{arch.to_deb()}-bin",
            "grub2-common",
            "initramfs-tools",
            "systemd-sysv",
        ]

    @classmethod
    def kernel_glob(cls) -> str:
        return "boot/vmlinuz-*"

    @classmethod
    def initrd_glob(cls) -> str:
        return "boot/initrd.img-*"

    @classmethod
    def bootloader_id(cls) -> str:
        return "debian"

    @classmethod
    def apt_cmd(cls, operation: str) -> list[str]:
        return [
            "apt-get",
            "-o", "APT::Get::Assume-Yes=true",
            "-o", "DPkg::Use-Pty=false",
            "-o", "DPkg::Options::=--force-confdef",
            "-o", "DPkg::Options::=--force-confold",
            operation,
        ]  # fmt: skip

    @classmethod
    def sync(cls, context: Context) -> None:
        run_in_chroot(context.root, cls.apt_cmd("update"), timeout=context.config.tool_timeout)

    @classmethod
    def install_packages(cls, context: Context, packages: Sequence[str]) -> None:
        # Debian policy is to start daemons by default. The policy-rc.d script can be used to choose which
        # ones to start. Let's install one that denies all daemon startups while we install packages in the
        # chroot, we don't want services of the disk image to run on the build host.
        policyrcd = context.root / "usr/sbin/policy-rc.d"
        with umask(~0o755):
            policyrcd.parent.mkdir(parents=True, exist_ok=True)
            policyrcd.write_text("#!/bin/sh\nexit 101\n")

        try:
            run_in_chroot(
                context.root,
                [*cls.apt_cmd("install"), *packages],
                timeout=context.config.tool_timeout,
            )
        finally:
            policyrcd.unlink(missing_ok=True)

    @classmethod
    def install_bootloader(cls, context: Context) -> None:
        run_in_chroot(
            context.root,
            [
                "grub-install",
                f"--target={context.architecture.to_grub()}",
                "--efi-directory=/boot/efi",
                "--boot-directory=/boot",
                f"--bootloader-id={cls.bootloader_id()}",
                # Populate the fallback path EFI/BOOT/BOOT<ARCH>.EFI so the firmware of the virtual machine
                # finds the bootloader without a boot entry, and leave the EFI variables of the build host
                # alone.
                "--removable",
                "--no-nvram",
            ],
            timeout=context.config.tool_timeout,
        )

    @classmethod
    def update_initrd(cls, context: Context) -> None:
        # Kernel postinst scripts normally generate the initrd already, only create one from scratch if they
        # did not.
        op = "-u" if any(context.root.glob(cls.initrd_glob())) else "-c"
        run_in_chroot(
            context.root,
            ["update-initramfs", op, "-k", "all"],
            timeout=context.config.tool_timeout,
        )

    @classmethod
    def update_bootloader_config(cls, context: Context) -> None:
        run_in_chroot(
            context.root,
            ["grub-mkconfig", "-o", "/boot/grub/grub.cfg"],
            timeout=context.config.tool_timeout,
        )
