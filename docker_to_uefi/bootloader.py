# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import dataclasses
import enum
import logging
import os
import shutil
import textwrap
from collections.abc import Iterator
from pathlib import Path

from docker_to_uefi.context import Context
from docker_to_uefi.finalize import Finalizer
from docker_to_uefi.log import BootloaderInstallFailure, complete_step, fail_as
from docker_to_uefi.loop import LoopDevice
from docker_to_uefi.mounts import API_VFS, bind_mount
from docker_to_uefi.util import StrEnum, umask


class BootloaderState(StrEnum):
    unconfigured         = enum.auto()
    chroot_ready         = enum.auto()
    bootloader_installed = enum.auto()
    configured           = enum.auto()  # fmt: skip


@dataclasses.dataclass(frozen=True)
class BootConfig:
    kernel: Path
    initrd: Path
    root_uuid: str
    esp_uuid: str
    cmdline: list[str]

    @property
    def root(self) -> str:
        return f"UUID={self.root_uuid}"


@contextlib.contextmanager
def host_resolv_conf(root: Path) -> Iterator[None]:
    """Give the chroot the name resolution configuration of the host, and put the image's own back after."""
    resolv = root / "etc/resolv.conf"
    backup = root / "etc/.resolv.conf.image"
    saved = resolv.exists() or resolv.is_symlink()

    if saved:
        os.rename(resolv, backup)

    try:
        if Path("/etc/resolv.conf").exists():
            with umask(~0o755):
                resolv.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile("/etc/resolv.conf", resolv)

        yield
    finally:
        resolv.unlink(missing_ok=True)
        if saved:
            os.rename(backup, resolv)


@contextlib.contextmanager
def device_map(root: Path, loop: LoopDevice) -> Iterator[Path]:
    # grub cannot map the loop device to a BIOS drive on its own.
    path = root / "boot/grub/device.map"
    with umask(~0o755):
        path.parent.mkdir(parents=True, exist_ok=True)

    path.write_text(f"(hd0) {loop.path}\n")
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


def fstab(root_uuid: str, esp_uuid: str) -> str:
    return textwrap.dedent(
        f"""\
        # <file system> <mount point> <type> <options> <dump> <pass>
        UUID={root_uuid} / ext4 errors=remount-ro 0 1
        UUID={esp_uuid} /boot/efi vfat umask=0077 0 2
        """
    )


def hosts(hostname: str) -> str:
    return textwrap.dedent(
        f"""\
        127.0.0.1	localhost
        127.0.1.1	{hostname}
        ::1	localhost ip6-localhost ip6-loopback
        ff02::1	ip6-allnodes
        ff02::2	ip6-allrouters
        """
    )


def grub_defaults(root_uuid: str, cmdline: list[str]) -> str:
    return textwrap.dedent(
        f"""\
        GRUB_DEVICE=UUID={root_uuid}
        GRUB_DEVICE_UUID={root_uuid}
        GRUB_DISABLE_LINUX_UUID=false
        GRUB_DISABLE_OS_PROBER=true
        GRUB_TIMEOUT=1
        GRUB_TERMINAL="serial console"
        GRUB_SERIAL_COMMAND="serial --speed=115200"
        GRUB_CMDLINE_LINUX_DEFAULT="{" ".join(cmdline)}"
        """
    )


def write_file(path: Path, content: str, mode: int = 0o644) -> None:
    with umask(~0o755):
        path.parent.mkdir(parents=True, exist_ok=True)

    # Replace rather than write through, the image might ship any of these as a symlink.
    path.unlink(missing_ok=True)
    with umask(~mode):
        path.write_text(content)


def reset_machine_id(root: Path) -> None:
    """
    Make /etc/machine-id an empty file.

    This way, on the first boot it is initialized and committed, so every machine booted from the disk image
    gets its own machine ID.
    """
    write_file(root / "etc/machine-id", "", 0o444)

    dbus = root / "var/lib/dbus/machine-id"
    if dbus.exists() and not dbus.is_symlink():
        dbus.unlink()
        dbus.symlink_to("/etc/machine-id")


def find_boot_files(root: Path, glob: str) -> list[Path]:
    return sorted(p for p in root.glob(glob) if p.is_file())


class BootloaderAdapter:
    """
    Makes the populated root partition bootable.

    The adapter moves strictly through unconfigured, chroot_ready, bootloader_installed and configured. The
    special file systems it binds into the chroot are released by the finalizer, before the root partition
    they are mounted on.
    """

    def __init__(self, context: Context, finalizer: Finalizer) -> None:
        self.context = context
        self.finalizer = finalizer
        self.state = BootloaderState.unconfigured

    def require(self, state: BootloaderState) -> None:
        assert self.state == state, f"Bootloader setup is {self.state}, expected {state}"

    def advance(self, new: BootloaderState) -> None:
        logging.debug(f"Bootloader setup: {self.state} → {new}")
        self.state = new

    def prepare_chroot(self) -> None:
        self.require(BootloaderState.unconfigured)

        root = self.context.root
        timeout = self.context.config.tool_timeout

        with complete_step("Preparing chroot…"):
            for fs in API_VFS:
                self.finalizer.enter_context(
                    bind_mount(Path("/") / fs, root / fs, timeout=timeout),
                    f"Unmounting {root / fs}",
                )

            self.finalizer.enter_context(host_resolv_conf(root), "Restoring /etc/resolv.conf")

        self.advance(BootloaderState.chroot_ready)

    def install(self) -> None:
        self.require(BootloaderState.chroot_ready)

        context = self.context
        installer = context.installer
        assert context.loop

        packages = [*installer.boot_packages(context.architecture), *context.config.extra_packages]

        with fail_as(
            BootloaderInstallFailure,
            f"Failed to install the boot packages of {installer.pretty_name()}",
            hint="The image needs working package sources, check its /etc/apt/sources.list",
        ):
            with complete_step("Updating package lists…"):
                installer.sync(context)

            with complete_step(f"Installing {', '.join(packages)}…"):
                installer.install_packages(context, packages)

            installer.post_install(context)

        if not find_boot_files(context.root, installer.kernel_glob()):
            raise BootloaderInstallFailure(
                f"No kernel found at /{installer.kernel_glob()} after installing {', '.join(packages)}"
            )

        with complete_step("Installing grub…"), device_map(context.root, context.loop):
            with fail_as(BootloaderInstallFailure, "grub-install failed"):
                installer.install_bootloader(context)

        fallback = context.esp / f"EFI/BOOT/BOOT{context.architecture.to_efi().upper()}.EFI"
        if not fallback.exists():
            raise BootloaderInstallFailure(
                f"grub-install did not install /{fallback.relative_to(context.root)}"
            )

        self.advance(BootloaderState.bootloader_installed)

    def configure(self) -> BootConfig:
        self.require(BootloaderState.bootloader_installed)

        context = self.context
        config = context.config
        installer = context.installer
        root = context.root
        assert context.loop and context.root_uuid and context.esp_uuid

        cmdline = config.kernel_command_line_or_default()

        with complete_step("Writing boot configuration…"):
            write_file(root / "etc/fstab", fstab(context.root_uuid, context.esp_uuid))
            write_file(root / "etc/hostname", f"{config.hostname}\n")
            write_file(root / "etc/hosts", hosts(config.hostname))
            write_file(
                root / "etc/default/grub.d/90-docker-to-uefi.cfg",
                grub_defaults(context.root_uuid, cmdline),
            )
            reset_machine_id(root)

        with fail_as(BootloaderInstallFailure, "Failed to generate the boot configuration"):
            with complete_step("Generating initrd…"):
                installer.update_initrd(context)

            with complete_step("Generating grub.cfg…"), device_map(root, context.loop):
                installer.update_bootloader_config(context)

        kernels = find_boot_files(root, installer.kernel_glob())
        initrds = find_boot_files(root, installer.initrd_glob())
        if not kernels or not initrds:
            raise BootloaderInstallFailure(
                f"Expected a kernel at /{installer.kernel_glob()} "
                f"and an initrd at /{installer.initrd_glob()}"
            )
        if not (root / "boot/grub/grub.cfg").exists():
            raise BootloaderInstallFailure("grub-mkconfig did not write /boot/grub/grub.cfg")

        self.advance(BootloaderState.configured)

        return BootConfig(
            kernel=Path("/") / kernels[-1].relative_to(root),
            initrd=Path("/") / initrds[-1].relative_to(root),
            root_uuid=context.root_uuid,
            esp_uuid=context.esp_uuid,
            cmdline=cmdline,
        )


def install_bootloader(context: Context, finalizer: Finalizer) -> BootConfig:
    adapter = BootloaderAdapter(context, finalizer)
    adapter.prepare_chroot()
    adapter.install()
    bootconfig = adapter.configure()

    logging.info(f"Kernel {bootconfig.kernel}, initrd {bootconfig.initrd}, root={bootconfig.root}")
    logging.info(f"Kernel command line: {' '.join(bootconfig.cmdline)}")
    return bootconfig
