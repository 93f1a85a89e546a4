# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import logging
from contextlib import AbstractContextManager
from types import TracebackType
from typing import Any, Callable, Optional, TypeVar

from docker_to_uefi.log import CleanupWarning

T = TypeVar("T")


class Finalizer:
    """
    Releases everything a run acquired, in reverse order of acquisition, whether or not the run succeeded.

    Every teardown step is best-effort: if one fails, the failure is recorded as a CleanupWarning and the
    remaining steps still run. Teardown failures never replace the exception the run is unwinding with.
    """

    def __init__(self) -> None:
        self.stack = contextlib.ExitStack()
        self.warnings: list[CleanupWarning] = []

    def __enter__(self) -> "Finalizer":
        self.stack.__enter__()
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        try:
            self.stack.__exit__(exc_type, exc, tb)
        finally:
            self.report()

    def warn(self, description: str, e: BaseException) -> None:
        w = CleanupWarning(f"{description} failed: {e}")
        self.warnings.append(w)
        logging.warning(str(w))

    def callback(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        def best_effort() -> None:
            try:
                fn(*args, **kwargs)
            except Exception as e:
                self.warn(description, e)

        self.stack.callback(best_effort)

    def enter_context(self, cm: AbstractContextManager[T], description: str) -> T:
        enter = type(cm).__enter__
        exit = type(cm).__exit__
        value = enter(cm)

        def best_effort(
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType],
        ) -> bool:
            try:
                exit(cm, exc_type, exc, tb)
            except Exception as e:
                if e is not exc:
                    self.warn(description, e)
            # Never swallow the exception the run is unwinding with.
            return False

        self.stack.push(best_effort)
        return value

    def report(self) -> None:
        if not self.warnings:
            return

        logging.warning(
            f"{len(self.warnings)} cleanup step(s) failed, leftover mounts or loop devices might have to be "
            "removed manually ('findmnt', 'losetup --list')"
        )
