# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Callable, NoReturn, Optional

from docker_to_uefi.log import ARG_DEBUG, PipelineError, die
from docker_to_uefi.util import _FILE, PathString, unique

# These types are only generic during type checking and not at runtime, leading
# to a TypeError during compilation.
# Let's be as strict as we can with the description for the usage we have.
if TYPE_CHECKING:
    CompletedProcess = subprocess.CompletedProcess[str]
    Popen = subprocess.Popen[str]
else:
    CompletedProcess = subprocess.CompletedProcess
    Popen = subprocess.Popen


def ensure_exc_info() -> tuple[type[BaseException], BaseException, TracebackType]:
    exctype, exc, tb = sys.exc_info()
    assert exctype
    assert exc
    assert tb
    return (exctype, exc, tb)


@contextlib.contextmanager
def uncaught_exception_handler(exit: Callable[[int], NoReturn] = sys.exit) -> Iterator[None]:
    rc = 0
    try:
        yield
    except SystemExit as e:
        rc = e.code if isinstance(e.code, int) else 1

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
    except KeyboardInterrupt:
        rc = 1

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
        else:
            logging.error("Interrupted")
    except PipelineError as e:
        rc = 1

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())

        logging.error(f"{e.stage.capitalize()} failed ({type(e).__name__}): {e}")
        if e.hint:
            logging.info(f"({e.hint})")
    except subprocess.CalledProcessError as e:
        # We always log when subprocess.CalledProcessError is raised, so we don't log again here.
        rc = e.returncode

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
    except BaseException:
        sys.excepthook(*ensure_exc_info())
        rc = 1
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        exit(rc)


def log_process_failure(cmdline: Sequence[str], returncode: int) -> None:
    if -returncode in (signal.SIGINT, signal.SIGTERM):
        logging.error(f"Interrupted by {signal.Signals(-returncode).name} signal")
    elif returncode < 0:
        logging.error(f'"{shlex.join(cmdline)}" was killed by {signal.Signals(-returncode).name} signal.')
    elif returncode == 127:
        logging.error(f"{cmdline[0]} not found.")
    else:
        logging.error(f'"{shlex.join(cmdline)}" returned non-zero exit code {returncode}.')


def run(
    cmdline: Sequence[PathString],
    check: bool = True,
    stdin: _FILE = None,
    stdout: _FILE = None,
    stderr: _FILE = None,
    input: Optional[str] = None,
    env: Mapping[str, str] = {},
    log: bool = True,
    timeout: Optional[float] = None,
) -> CompletedProcess:
    if input is not None:
        assert stdin is None  # stdin and input cannot be specified together
        stdin = subprocess.PIPE

    with spawn(
        cmdline,
        check=check,
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        env=env,
        log=log,
    ) as process:
        try:
            out, err = process.communicate(input, timeout=timeout)
        except subprocess.TimeoutExpired:
            if log:
                cmd = shlex.join(os.fspath(x) for x in cmdline)
                logging.error(f'"{cmd}" timed out after {timeout} seconds.')
            raise

    return CompletedProcess(cmdline, process.returncode, out, err)


@contextlib.contextmanager
def spawn(
    cmdline: Sequence[PathString],
    check: bool = True,
    stdin: _FILE = None,
    stdout: _FILE = None,
    stderr: _FILE = None,
    env: Mapping[str, str] = {},
    log: bool = True,
) -> Iterator[Popen]:
    cmd = [os.fspath(x) for x in cmdline]

    if ARG_DEBUG.get():
        logging.info(f"+ {shlex.join(cmd)}")

    if not stdout and not stderr:
        # Unless explicit redirection is done, print all subprocess output on stderr, since we do so as well
        # for our own output.
        stdout = sys.stderr

    if stdin is None:
        stdin = subprocess.DEVNULL

    env = {
        "PATH": os.environ["PATH"],
        "TERM": os.getenv("TERM", "vt220"),
        "LANG": "C.UTF-8",
        **{k: v for k, v in env.items() if k != "LANG" and not k.startswith("LC_")},
    }

    if "TMPDIR" in os.environ:
        env["TMPDIR"] = os.environ["TMPDIR"]

    if "HOME" not in env:
        env["HOME"] = "/"

    try:
        proc = subprocess.Popen(
            cmd,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            text=True,
            env=env,
        )
    except FileNotFoundError as e:
        die(f"{e.filename} not found.")

    try:
        yield proc
        proc.wait()
    except KeyboardInterrupt:
        proc.send_signal(signal.SIGINT)
        raise
    except BaseException:
        proc.terminate()
        raise
    finally:
        # Make sure any SIGINT/SIGTERM signal we sent is actually processed.
        proc.send_signal(signal.SIGCONT)
        returncode = proc.wait()

    if check and returncode != 0:
        if log:
            log_process_failure(cmd, returncode)
        raise subprocess.CalledProcessError(returncode, cmdline)


def finalize_path(extra: Sequence[Path] = ()) -> str:
    path = [os.fspath(p) for p in extra]
    path += [s for s in os.environ.get("PATH", "").split(":") if s]

    # Make sure that the sbin directories are always in $PATH, the tools we need usually live there.
    path += [s for s in ("/usr/local/sbin", "/usr/sbin", "/sbin", "/usr/bin", "/bin") if s not in path]

    return ":".join(unique(path))


def find_binary(*names: PathString, root: Optional[Path] = None) -> Optional[Path]:
    root = root or Path("/")
    path = ":".join(os.fspath(root / s.lstrip("/")) for s in finalize_path().split(":"))

    for name in names:
        if Path(name).is_absolute():
            name = root / Path(name).relative_to("/")
        elif "/" in str(name):
            name = root / name

        if binary := shutil.which(name, path=path):
            if root == Path("/"):
                return Path(binary)

            return Path("/") / Path(binary).relative_to(root)

    return None


def chroot_cmd(root: Path) -> list[PathString]:
    return ["chroot", root]


def chroot_env() -> dict[str, str]:
    return {
        "HOME": "/root",
        "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        # Keep debconf and the maintainer scripts from prompting.
        "DEBIAN_FRONTEND": "noninteractive",
        "DEBCONF_NONINTERACTIVE_SEEN": "true",
    }


def run_in_chroot(
    root: Path,
    cmdline: Sequence[PathString],
    *,
    timeout: Optional[float] = None,
    input: Optional[str] = None,
    stdout: _FILE = None,
) -> CompletedProcess:
    return run([*chroot_cmd(root), *cmdline], env=chroot_env(), timeout=timeout, input=input, stdout=stdout)
