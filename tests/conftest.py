# SPDX-License-Identifier: LGPL-2.1-or-later

from pathlib import Path

import pytest

from docker_to_uefi.config import Config, parse_config
from docker_to_uefi.context import Context
from docker_to_uefi.distributions import Architecture


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return parse_config(
        [
            "create",
            "--image-name", "debian:latest",
            "--output-file", str(tmp_path / "disk.raw"),
            "--disk-size", "2",
            "--root-passwd", "hunter2",
            "--flavor", "debian",
            "--workspace-directory", str(tmp_path),
        ]
    )  # fmt: skip


@pytest.fixture
def context(config: Config, tmp_path: Path) -> Context:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return Context(config, workspace=workspace, architecture=Architecture.x86_64)
