# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import contextvars
import logging
import os
import subprocess
import sys
from collections.abc import Iterator
from typing import Any, NoReturn, Optional

# This global should be initialized after parsing arguments
ARG_DEBUG = contextvars.ContextVar("debug", default=False)
LEVEL = 0


def terminal_is_dumb() -> bool:
    return not sys.stdout.isatty() or not sys.stderr.isatty() or os.getenv("TERM", "") == "dumb"


class Style:
    # fmt: off
    bold   = "\033[0;1;39m"     if not terminal_is_dumb() else ""
    blue   = "\033[0;1;34m"     if not terminal_is_dumb() else ""
    gray   = "\033[0;38;5;245m" if not terminal_is_dumb() else ""
    red    = "\033[31;1m"       if not terminal_is_dumb() else ""
    yellow = "\033[33;1m"       if not terminal_is_dumb() else ""
    reset  = "\033[0m"          if not terminal_is_dumb() else ""
    # fmt: on


class PipelineError(Exception):
    """A fatal failure of one of the image creation stages."""

    stage = "setup"

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint


class ImageNotFound(PipelineError):
    stage = "image extraction"


class LayerCorrupt(PipelineError):
    stage = "image extraction"


class OutputPathUnwritable(PipelineError):
    stage = "disk allocation"


class PartitionTableWriteFailure(PipelineError):
    stage = "partitioning"


class ResourceBusy(PipelineError):
    stage = "locking"


class LoopAttachFailure(PipelineError):
    stage = "loop device attachment"


class FormatFailure(PipelineError):
    stage = "formatting"


class MountFailure(PipelineError):
    stage = "root population"


class InsufficientSpace(PipelineError):
    stage = "root population"


class BootloaderInstallFailure(PipelineError):
    stage = "bootloader installation"


class PasswordSetFailure(PipelineError):
    stage = "account configuration"


class CleanupWarning(UserWarning):
    """A teardown step that failed. Collected and reported, never raised."""


def die(message: str, *, hint: Optional[str] = None) -> NoReturn:
    logging.error(f"{message}")
    if hint:
        logging.info(f"({hint})")
    sys.exit(1)


@contextlib.contextmanager
def fail_as(error: type[PipelineError], message: str, *, hint: Optional[str] = None) -> Iterator[None]:
    try:
        yield
    except subprocess.TimeoutExpired as e:
        raise error(f"{message}: {e.cmd[0]} timed out after {e.timeout} seconds", hint=hint) from e
    except subprocess.CalledProcessError as e:
        raise error(f"{message}: {e.cmd[0]} returned non-zero exit code {e.returncode}", hint=hint) from e
    except OSError as e:
        raise error(f"{message}: {e}", hint=hint) from e


def log_step(text: str) -> None:
    prefix = " " * LEVEL

    if sys.exc_info()[0]:
        # We are falling through exception handling blocks.
        # De-emphasize this step here, so the user can tell more
        # easily which step generated the exception. The exception
        # or error will only be printed after we finish cleanup.
        logging.info(f"{prefix}({text})")
    else:
        logging.info(f"{prefix}{Style.bold}{text}{Style.reset}")


def log_notice(text: str) -> None:
    logging.info(f"{Style.bold}{text}{Style.reset}")


@contextlib.contextmanager
def complete_step(text: str, text2: Optional[str] = None) -> Iterator[list[Any]]:
    global LEVEL

    log_step(text)

    LEVEL += 1
    try:
        args: list[Any] = []
        yield args
    finally:
        LEVEL -= 1
        assert LEVEL >= 0

    if text2 is not None:
        log_step(text2.format(*args))


class Formatter(logging.Formatter):
    def __init__(self, fmt: Optional[str] = None, *args: Any, **kwargs: Any) -> None:
        fmt = fmt or "%(message)s"

        self.formatters = {
            logging.DEBUG:    logging.Formatter(f"‣ {Style.gray}{fmt}{Style.reset}"),
            logging.INFO:     logging.Formatter(f"‣ {fmt}"),
            logging.WARNING:  logging.Formatter(f"‣ {Style.yellow}{fmt}{Style.reset}"),
            logging.ERROR:    logging.Formatter(f"‣ {Style.red}{fmt}{Style.reset}"),
            logging.CRITICAL: logging.Formatter(f"‣ {Style.red}{Style.bold}{fmt}{Style.reset}"),
        }  # fmt: skip

        super().__init__(fmt, *args, **kwargs)

    def format(self, record: logging.LogRecord) -> str:
        return self.formatters[record.levelno].format(record)


def log_setup(default_log_level: str = "info") -> None:
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(Formatter())

    logging.getLogger().addHandler(handler)
    logging.getLogger().setLevel(
        logging.getLevelName(os.getenv("DOCKER_TO_UEFI_LOG_LEVEL", default_log_level).upper())
    )
