# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import dataclasses
import logging
import subprocess
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

from docker_to_uefi.log import LoopAttachFailure, complete_step, fail_as
from docker_to_uefi.run import run

PARTITION_SETTLE_TIMEOUT = 10.0


@dataclasses.dataclass(frozen=True)
class LoopDevice:
    path: Path
    backing: Path

    def partition(self, n: int) -> Path:
        return Path(f"{self.path}p{n}")

    def __str__(self) -> str:
        return str(self.path)


def wait_for_partitions(
    loop: LoopDevice,
    partitions: int,
    *,
    timeout: float = PARTITION_SETTLE_TIMEOUT,
) -> None:
    deadline = time.monotonic() + timeout
    nodes = [loop.partition(n) for n in range(1, partitions + 1)]

    while missing := [n for n in nodes if not n.exists()]:
        if time.monotonic() > deadline:
            raise LoopAttachFailure(
                f"Partition devices {', '.join(map(str, missing))} did not appear",
                hint="Partition scanning on loop devices needs kernel support and a populated /dev",
            )

        time.sleep(0.1)


@contextlib.contextmanager
def attach_loop(image: Path, *, partitions: int = 2, timeout: Optional[int] = None) -> Iterator[LoopDevice]:
    with complete_step(f"Attaching {image}…", "Attached {0} as {1}") as output:
        with fail_as(
            LoopAttachFailure,
            f"Failed to attach {image} to a loop device",
            hint="This requires a free loop device, 'losetup --list' shows the attached ones",
        ):
            c = run(
                ["losetup", "--find", "--show", "--partscan", image],
                stdout=subprocess.PIPE,
                timeout=timeout,
            )

        if not c.stdout.strip():
            raise LoopAttachFailure(f"losetup did not report the loop device {image} was attached to")

        loop = LoopDevice(Path(c.stdout.strip()), image)
        output += [image, loop]

    try:
        wait_for_partitions(loop, partitions)
        yield loop
    finally:
        with complete_step(f"Detaching {loop}…"):
            run(["losetup", "--detach", loop.path], timeout=timeout)
            logging.debug(f"Detached {loop} from {image}")
