# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import logging
import uuid
from pathlib import Path
from typing import Final, Optional

from docker_to_uefi.config import (
    ESP_SIZE,
    GPT_FOOTER_SECTORS,
    GPT_HEADER_SECTORS,
    PARTITION_ALIGNMENT,
    SECTOR_SIZE,
)
from docker_to_uefi.log import PartitionTableWriteFailure, fail_as
from docker_to_uefi.run import run
from docker_to_uefi.util import format_bytes

ESP_TYPE_UUID: Final[str] = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
LINUX_FILESYSTEM_TYPE_UUID: Final[str] = "0fc63daf-8483-4772-8e79-3d69d8477de4"


@dataclasses.dataclass(frozen=True)
class Partition:
    number: int
    name: str
    type: str
    uuid: str
    # Both in sectors.
    start: int
    size: int

    @property
    def end(self) -> int:
        return self.start + self.size - 1

    @property
    def size_bytes(self) -> int:
        return self.size * SECTOR_SIZE

    def to_sfdisk(self) -> str:
        return (
            f'start={self.start}, size={self.size}, type={self.type}, uuid={self.uuid}, name="{self.name}"'
        )


@dataclasses.dataclass(frozen=True)
class PartitionLayout:
    size: int
    disk_uuid: str
    esp: Partition
    root: Partition

    @property
    def partitions(self) -> list[Partition]:
        return [self.esp, self.root]

    def to_sfdisk(self) -> str:
        lines = [
            "label: gpt",
            f"label-id: {self.disk_uuid}",
            "unit: sectors",
            f"sector-size: {SECTOR_SIZE}",
            "",
            *(p.to_sfdisk() for p in self.partitions),
        ]
        return "\n".join(lines) + "\n"


def plan_partitions(size: int, *, disk_uuid: Optional[str] = None) -> PartitionLayout:
    """
    Lay out the ESP followed by the root partition on a disk of size bytes.

    The ESP starts at the first 1 MiB boundary. The root partition takes everything between the end of the
    ESP and the backup GPT at the end of the disk.
    """
    sectors = size // SECTOR_SIZE
    align = PARTITION_ALIGNMENT // SECTOR_SIZE

    esp_start = align
    esp_size = ESP_SIZE // SECTOR_SIZE
    root_start = esp_start + esp_size
    # The last sector that is not covered by the backup GPT header and partition entries.
    last_usable = sectors - GPT_FOOTER_SECTORS - 1
    root_size = last_usable - root_start + 1

    assert esp_start >= GPT_HEADER_SECTORS

    if root_size <= 0:
        raise PartitionTableWriteFailure(
            f"A disk of {format_bytes(size)} cannot hold the {format_bytes(ESP_SIZE)} ESP "
            "and a root partition",
            hint="Increase --disk-size",
        )

    return PartitionLayout(
        size=size,
        disk_uuid=disk_uuid or str(uuid.uuid4()),
        esp=Partition(1, "ESP", ESP_TYPE_UUID, str(uuid.uuid4()), esp_start, esp_size),
        root=Partition(2, "root", LINUX_FILESYSTEM_TYPE_UUID, str(uuid.uuid4()), root_start, root_size),
    )


def write_partition_table(image: Path, layout: PartitionLayout, *, timeout: Optional[int] = None) -> None:
    for p in layout.partitions:
        logging.info(
            f"Partition {p.number} ({p.name}): {format_bytes(p.size_bytes)} starting at sector {p.start}"
        )

    with fail_as(PartitionTableWriteFailure, f"Failed to write the partition table of {image}"):
        run(
            [
                "sfdisk",
                "--wipe=always",
                "--no-reread",
                "--no-tell-kernel",
                "--quiet",
                image,
            ],
            input=layout.to_sfdisk(),
            timeout=timeout,
        )
