# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import subprocess
import time
from pathlib import Path
from typing import Optional

from docker_to_uefi.log import PasswordSetFailure, complete_step, fail_as
from docker_to_uefi.run import run
from docker_to_uefi.util import patch_file


@dataclasses.dataclass(frozen=True)
class Credentials:
    user: str
    hashed_password: str

    def __repr__(self) -> str:
        return f"Credentials(user={self.user!r}, hashed_password=<redacted>)"


def hash_password(password: str, *, timeout: Optional[int] = None) -> str:
    """Hash password with SHA-512 crypt and a random salt, the scheme Debian and Ubuntu use by default."""
    with fail_as(PasswordSetFailure, "Failed to hash the root password"):
        hashed = run(
            ["openssl", "passwd", "-stdin", "-6"],
            input=password,
            stdout=subprocess.PIPE,
            timeout=timeout,
        ).stdout.strip()

    if not hashed.startswith("$6$") or ":" in hashed:
        raise PasswordSetFailure("openssl passwd returned an unexpected password hash")

    return hashed


def days_since_epoch() -> int:
    return int(time.time() // 86400)


def set_password(root: Path, credentials: Credentials) -> None:
    shadow = root / "etc/shadow"
    found = False

    if not shadow.is_file() or shadow.is_symlink():
        raise PasswordSetFailure(
            "The image does not have an /etc/shadow",
            hint="Only images with a shadow password database are supported",
        )

    def patcher(line: str) -> str:
        nonlocal found

        fields = line.rstrip("\n").split(":")
        if fields[0] != credentials.user or len(fields) < 3:
            return line

        found = True
        fields[1] = credentials.hashed_password
        # A zero date of last change forces a password change on first login.
        if fields[2] in ("", "0"):
            fields[2] = str(days_since_epoch())

        return ":".join(fields) + "\n"

    with fail_as(PasswordSetFailure, f"Failed to update {shadow}"):
        patch_file(shadow, patcher)

    if not found:
        raise PasswordSetFailure(f"There is no {credentials.user} entry in /etc/shadow of the image")


def configure_root_password(root: Path, password: str, *, timeout: Optional[int] = None) -> Credentials:
    with complete_step("Setting root password…"):
        credentials = Credentials("root", hash_password(password, timeout=timeout))
        set_password(root, credentials)

    return credentials
