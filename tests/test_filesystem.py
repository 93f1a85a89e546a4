# SPDX-License-Identifier: LGPL-2.1-or-later

import re
import uuid
from pathlib import Path

import pytest

from docker_to_uefi import filesystem
from docker_to_uefi.filesystem import format_fat_uuid, format_partitions
from docker_to_uefi.log import FormatFailure

from . import FakeRun


def test_format_fat_uuid() -> None:
    assert format_fat_uuid("1a2b3c4d") == "1A2B-3C4D"


def test_format_partitions(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeRun()
    monkeypatch.setattr(filesystem, "run", fake)

    esp, root = format_partitions(Path("/dev/loop3p1"), Path("/dev/loop3p2"))

    assert esp.device == Path("/dev/loop3p1")
    assert esp.fstype == "vfat"
    assert re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}", esp.uuid)
    assert root.device == Path("/dev/loop3p2")
    assert root.fstype == "ext4"
    assert str(uuid.UUID(root.uuid)) == root.uuid

    mkfat, mkext4 = fake.calls
    assert mkfat[:5] == ["mkfs.fat", "-F", "32", "-n", "ESP"]
    assert mkfat[mkfat.index("-i") + 1] == esp.uuid.replace("-", "")
    assert mkfat[-1] == "/dev/loop3p1"
    assert mkext4[mkext4.index("-U") + 1] == root.uuid
    assert mkext4[mkext4.index("-L") + 1] == "root"
    assert mkext4[-1] == "/dev/loop3p2"


def test_format_partitions_are_unique(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(filesystem, "run", FakeRun())

    first = format_partitions(Path("/dev/loop3p1"), Path("/dev/loop3p2"))
    second = format_partitions(Path("/dev/loop3p1"), Path("/dev/loop3p2"))

    assert first[1].uuid != second[1].uuid


def test_format_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeRun(fail=lambda cmdline: cmdline[0] == "mkfs.ext4")
    monkeypatch.setattr(filesystem, "run", fake)

    with pytest.raises(FormatFailure, match="ext4"):
        format_partitions(Path("/dev/loop3p1"), Path("/dev/loop3p2"))

    assert fake.commands() == ["mkfs.fat", "mkfs.ext4"]
