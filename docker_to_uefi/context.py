# SPDX-License-Identifier: LGPL-2.1-or-later

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from docker_to_uefi.config import Config
from docker_to_uefi.distributions import Architecture, FlavorInstaller

if TYPE_CHECKING:
    from docker_to_uefi.disk import OutputLock
    from docker_to_uefi.image import ContainerImage
    from docker_to_uefi.layers import MergedRootFS
    from docker_to_uefi.loop import LoopDevice


class Context:
    """State shared between the stages of a single run."""

    def __init__(
        self,
        config: Config,
        *,
        workspace: Path,
        architecture: Optional[Architecture] = None,
    ) -> None:
        self.config = config
        self.workspace = workspace
        self.architecture = architecture or Architecture.native()

        self.lock: Optional["OutputLock"] = None
        self.image: Optional["ContainerImage"] = None
        self.rootfs: Optional["MergedRootFS"] = None
        self.loop: Optional["LoopDevice"] = None
        self.esp_uuid: Optional[str] = None
        self.root_uuid: Optional[str] = None

        self.image_dir.mkdir(exist_ok=True)
        self.staging.mkdir(exist_ok=True)
        self.root.mkdir(exist_ok=True)

    @property
    def image_dir(self) -> Path:
        return self.workspace / "image"

    @property
    def staging(self) -> Path:
        return self.workspace / "staging"

    @property
    def root(self) -> Path:
        return self.workspace / "root"

    @property
    def esp(self) -> Path:
        return self.root / "boot/efi"

    @property
    def installer(self) -> type[FlavorInstaller]:
        return self.config.flavor.installer
