# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import dataclasses
import enum
import os
import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Final, Optional, Union

from docker_to_uefi.distributions import Flavor
from docker_to_uefi.log import ARG_DEBUG, Style
from docker_to_uefi.util import StrEnum

__version__ = "1"

SECTOR_SIZE: Final[int] = 512
# Partitions start and end on 1 MiB boundaries so that every filesystem block is aligned.
PARTITION_ALIGNMENT: Final[int] = 1024**2
# Protective MBR + GPT header + 128 partition entries of 128 bytes.
GPT_HEADER_SECTORS: Final[int] = 34
# Backup partition entries + backup GPT header.
GPT_FOOTER_SECTORS: Final[int] = 33
ESP_SIZE: Final[int] = 256 * 1024**2
ROOT_HEADROOM: Final[int] = 64 * 1024**2
MIN_DISK_SIZE_GIB: Final[int] = 1
DEFAULT_TOOL_TIMEOUT: Final[int] = 3600
DEFAULT_KERNEL_COMMAND_LINE: Final[tuple[str, ...]] = ("console=tty0", "console=ttyS0,115200")


class Verb(StrEnum):
    create = enum.auto()


class ContainerEngine(StrEnum):
    docker = enum.auto()
    podman = enum.auto()


@dataclasses.dataclass(frozen=True)
class Config:
    """Type-hinted storage for command line arguments."""

    verb: Verb
    image_name: str
    output: Path
    disk_size: int
    root_password: str = dataclasses.field(repr=False)
    flavor: Flavor
    extra_packages: list[str]
    hostname: str
    kernel_command_line: list[str]
    container_engine: ContainerEngine
    workspace_dir: Optional[Path]
    tool_timeout: int
    debug: bool

    @property
    def disk_size_bytes(self) -> int:
        return self.disk_size * 1024**3

    def workspace_dir_or_default(self) -> Path:
        if self.workspace_dir:
            return self.workspace_dir

        return Path(os.getenv("TMPDIR", "/var/tmp"))

    def kernel_command_line_or_default(self) -> list[str]:
        return [*DEFAULT_KERNEL_COMMAND_LINE, *self.kernel_command_line]

    def image_archive(self) -> Optional[Path]:
        """If the image name refers to a saved image archive on disk, return its path."""
        p = Path(self.image_name)
        return p.absolute() if p.is_file() else None


def parse_disk_size(value: str) -> int:
    try:
        size = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a whole number of gigabytes")

    if size < MIN_DISK_SIZE_GIB:
        raise argparse.ArgumentTypeError(f"Disk size must be at least {MIN_DISK_SIZE_GIB} GB, got {size}")

    return size


def parse_output(value: str) -> Path:
    path = Path(value).absolute()

    if path.is_dir():
        raise argparse.ArgumentTypeError(f"{path} is a directory")

    return path


def parse_password(value: str) -> str:
    if not value:
        raise argparse.ArgumentTypeError("The root password must not be empty")

    return value


def parse_kernel_argument(value: str) -> str:
    # The command line ends up in a double-quoted assignment in a file grub-mkconfig sources.
    if not value or any(c.isspace() or c in "\"\\$`" for c in value):
        raise argparse.ArgumentTypeError(
            f"{value!r} must be a single argument without whitespace, quotes, backslashes, '$' or '`'"
        )

    return value


def parse_timeout(value: str) -> int:
    try:
        timeout = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number of seconds")

    if timeout <= 0:
        raise argparse.ArgumentTypeError("The tool timeout must be positive")

    return timeout


class CommaDelimitedListAction(argparse.Action):
    def __call__(
        self,  # These type-hints are copied from argparse.pyi
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Union[str, Sequence[Any], None],
        option_string: Optional[str] = None,
    ) -> None:
        assert isinstance(values, str)
        ary = list(getattr(namespace, self.dest, None) or [])

        # Support list syntax for comma separated lists as well
        if values.startswith("[") and values.endswith("]"):
            values = values[1:-1]

        for x in values.split(","):
            x = x.strip()
            if not x:  # ignore empty entries
                continue

            # Remove ! prefixed list entries from list. !* removes all entries.
            if x.startswith("!*"):
                ary = []
            elif x.startswith("!"):
                if x[1:] in ary:
                    ary.remove(x[1:])
            else:
                ary.append(x)

        setattr(namespace, self.dest, ary)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docker-to-uefi",
        description="Turn a container image into a UEFI bootable raw disk image",
        # the synopsis below is supposed to be indented by two spaces
        usage="\n  "
        + textwrap.dedent("""\
              docker-to-uefi [options…] {b}create{e} --image-name REF --output-file PATH --disk-size GB
                                   --root-passwd SECRET --flavor {{debian,ubuntu}}
                docker-to-uefi -h | --help
                docker-to-uefi --version
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s " + __version__,
        help=argparse.SUPPRESS,
    )
    parser.add_argument(
        "--debug",
        help="Turn on debugging output",
        action="store_true",
        default=False,
    )

    verbs = parser.add_subparsers(dest="verb", metavar="VERB", required=True)
    create = verbs.add_parser(
        str(Verb.create),
        help="Create a bootable disk image from a container image",
        allow_abbrev=False,
    )

    group = create.add_argument_group("Image")
    group.add_argument(
        "-i", "--image-name",
        required=True,
        metavar="REF",
        help="Container image reference, or path to an image archive created with 'docker image save'",
    )
    group.add_argument(
        "--container-engine",
        type=ContainerEngine,
        choices=list(ContainerEngine),
        default=ContainerEngine.docker,
        help="Container engine used to fetch and save the image",
    )

    group = create.add_argument_group("Output")
    group.add_argument(
        "-o", "--output-file",
        dest="output",
        type=parse_output,
        required=True,
        metavar="PATH",
        help="Raw disk image to write",
    )
    group.add_argument(
        "-d", "--disk-size",
        type=parse_disk_size,
        required=True,
        metavar="GB",
        help="Size of the disk image in gigabytes (GiB)",
    )
    group.add_argument(
        "--workspace-directory",
        dest="workspace_dir",
        type=Path,
        default=None,
        metavar="PATH",
        help="Directory in which the image layers are extracted",
    )

    group = create.add_argument_group("Content")
    group.add_argument(
        "-r", "--root-passwd",
        dest="root_password",
        type=parse_password,
        required=True,
        metavar="SECRET",
        help="Password of the root account (stored hashed)",
    )
    group.add_argument(
        "-f", "--flavor",
        type=Flavor,
        choices=list(Flavor),
        required=True,
        help="Distribution conventions used to make the image bootable",
    )
    group.add_argument(
        "-e", "--extra-packages",
        action=CommaDelimitedListAction,
        default=[],
        metavar="PACKAGE",
        help="Additional packages to install in the image",
    )
    group.add_argument(
        "--hostname",
        default=None,
        help="Hostname of the image (defaults to the flavor name)",
    )
    group.add_argument(
        "--kernel-command-line",
        action="append",
        type=parse_kernel_argument,
        default=[],
        metavar="ARG",
        help="Append an argument to the kernel command line",
    )
    group.add_argument(
        "--tool-timeout",
        type=parse_timeout,
        default=DEFAULT_TOOL_TIMEOUT,
        metavar="SECONDS",
        help="Give up on an external tool after this many seconds",
    )

    return parser


def parse_config(argv: Sequence[str] = ()) -> Config:
    ns = create_argument_parser().parse_args(list(argv))

    if ns.debug:
        ARG_DEBUG.set(ns.debug)

    return Config(
        verb=Verb(ns.verb),
        image_name=ns.image_name,
        output=ns.output,
        disk_size=ns.disk_size,
        root_password=ns.root_password,
        flavor=ns.flavor,
        extra_packages=ns.extra_packages,
        hostname=ns.hostname or str(ns.flavor),
        kernel_command_line=ns.kernel_command_line,
        container_engine=ns.container_engine,
        workspace_dir=ns.workspace_dir,
        tool_timeout=ns.tool_timeout,
        debug=ns.debug,
    )
