# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import os
import stat
import tempfile
from pathlib import Path

from docker_to_uefi.accounts import configure_root_password
from docker_to_uefi.bootloader import BootConfig, install_bootloader
from docker_to_uefi.config import Config, Verb
from docker_to_uefi.context import Context
from docker_to_uefi.disk import allocate_disk, lock_output
from docker_to_uefi.filesystem import format_partitions
from docker_to_uefi.finalize import Finalizer
from docker_to_uefi.image import extract_image
from docker_to_uefi.layers import merge_image
from docker_to_uefi.log import LoopAttachFailure, complete_step, die, log_notice
from docker_to_uefi.loop import attach_loop
from docker_to_uefi.mounts import mount
from docker_to_uefi.partition import plan_partitions, write_partition_table
from docker_to_uefi.run import find_binary
from docker_to_uefi.tree import populate_tree, rmtree
from docker_to_uefi.util import format_bytes

REQUIRED_TOOLS = (
    "sfdisk",
    "losetup",
    "mkfs.fat",
    "mkfs.ext4",
    "mount",
    "umount",
    "chroot",
    "openssl",
    "cp",
    "rm",
)


def check_root() -> None:
    if os.getuid() != 0:
        raise LoopAttachFailure(
            "Attaching loop devices and mounting file systems requires root privileges",
            hint="Run docker-to-uefi as root",
        )


def check_tools(config: Config) -> None:
    tools = list(REQUIRED_TOOLS)
    if not config.image_archive():
        tools.append(str(config.container_engine))

    if missing := [t for t in tools if not find_binary(t)]:
        die(
            f"Required tools are missing: {', '.join(missing)}",
            hint="Install util-linux, dosfstools, e2fsprogs, openssl and a container engine",
        )


def create_workspace(config: Config) -> Path:
    workspace = Path(tempfile.mkdtemp(dir=config.workspace_dir_or_default(), prefix="docker-to-uefi-"))
    # Discard setuid/setgid bits as these are inherited and can leak into the image.
    workspace.chmod(stat.S_IMODE(workspace.stat().st_mode) & ~(stat.S_ISGID | stat.S_ISUID))
    return workspace


def run_create(config: Config) -> BootConfig:
    check_root()
    check_tools(config)

    timeout = config.tool_timeout

    with Finalizer() as finalizer:
        workspace = create_workspace(config)
        finalizer.callback(f"Removing {workspace}", rmtree, workspace)
        context = Context(config, workspace=workspace)

        context.lock = finalizer.enter_context(
            lock_output(config.output),
            f"Releasing lock on {config.output}",
        )

        with complete_step(f"Extracting image {config.image_name}…"):
            context.image = extract_image(context)

        context.rootfs = merge_image(context.image.layers, context.staging)
        # The layers are merged, don't keep two copies of the image around.
        rmtree(context.image_dir)

        with complete_step(f"Allocating {format_bytes(config.disk_size_bytes)} for {config.output}…"):
            allocate_disk(context.lock, config.disk_size_bytes)

        layout = plan_partitions(config.disk_size_bytes)
        with complete_step("Writing GPT partition table…"):
            write_partition_table(config.output, layout, timeout=timeout)

        context.loop = finalizer.enter_context(
            attach_loop(config.output, partitions=len(layout.partitions), timeout=timeout),
            f"Detaching loop device of {config.output}",
        )

        espfs, rootpart = format_partitions(
            context.loop.partition(layout.esp.number),
            context.loop.partition(layout.root.number),
            timeout=timeout,
        )
        context.esp_uuid = espfs.uuid
        context.root_uuid = rootpart.uuid

        with complete_step(f"Mounting root partition on {context.root}…"):
            finalizer.enter_context(
                mount(rootpart.device, context.root, fstype=rootpart.fstype, timeout=timeout),
                f"Unmounting {context.root}",
            )

        populate_tree(context.rootfs.path, context.root, timeout=timeout)

        # The ESP goes on top of the copied tree, it is nested in the root partition's mount and is unmounted
        # before it.
        with complete_step(f"Mounting ESP on {context.esp}…"):
            finalizer.enter_context(
                mount(
                    espfs.device,
                    context.esp,
                    fstype=espfs.fstype,
                    options=["umask=0077"],
                    timeout=timeout,
                ),
                f"Unmounting {context.esp}",
            )

        bootconfig = install_bootloader(context, finalizer)
        configure_root_password(context.root, config.root_password, timeout=timeout)

        context.lock.complete = True

    assert context.rootfs
    log_notice(
        f"{config.output} is ready ({format_bytes(config.disk_size_bytes)}, "
        f"{len(context.rootfs.entries)} entries, root={bootconfig.root})"
    )
    return bootconfig


def run_verb(config: Config) -> None:
    logging.debug(f"Running {config.verb} for {config.flavor} image {config.image_name}")

    if config.verb == Verb.create:
        run_create(config)
