"""Start a command with a connected unix socket handed to it as file descriptor 3."""

from __future__ import annotations

import argparse
import logging
import os
import socket
import subprocess
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

SOCKET_FD = 3


def run(socket_path: str, command: str, args: Sequence[str] = ()) -> int:
    """Connect to ``socket_path``, run ``command`` with the socket as fd 3, return its exit code."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.connect(socket_path)
        fd = sock.fileno()

        if fd == SOCKET_FD:
            os.set_inheritable(fd, True)
            preexec = None
        else:
            def preexec() -> None:
                os.dup2(fd, SOCKET_FD)

        process = subprocess.run(
            [command, *args], close_fds=False, preexec_fn=preexec, check=False
        )
        return process.returncode


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="qemu-wrapper",
        description="Run a command with a unix socket connection passed as fd 3.",
    )
    parser.add_argument("socket", help="path of the unix socket to connect to")
    parser.add_argument("command", help="program to run")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="arguments of the program")
    options = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        code = run(options.socket, options.command, options.args)
    except OSError as err:
        logger.critical("%s", err)
        return 1
    if code != 0:
        logger.critical("exit status %d", code)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())