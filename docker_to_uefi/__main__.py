# SPDX-License-Identifier: LGPL-2.1-or-later

import faulthandler
import signal
import sys
from types import FrameType
from typing import Optional

from docker_to_uefi import run_verb
from docker_to_uefi.config import parse_config
from docker_to_uefi.log import log_setup
from docker_to_uefi.run import uncaught_exception_handler


def onsigterm(signal: int, frame: Optional[FrameType]) -> None:
    raise KeyboardInterrupt()


@uncaught_exception_handler()
def main() -> None:
    signal.signal(signal.SIGTERM, onsigterm)

    log_setup()

    config = parse_config(sys.argv[1:])

    if config.debug:
        faulthandler.enable()

    run_verb(config)


if __name__ == "__main__":
    main()
