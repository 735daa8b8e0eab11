"""Connections carried over a pair of byte streams: a child process or our own stdio."""

from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional


@dataclass(frozen=True)
class IoAddr:
    """Address of one end of a stdio connection."""

    path: str

    def network(self) -> str:
        return "stdio"

    def __str__(self) -> str:
        return self.path


class IoConn:
    """A bidirectional connection made of a reader and a writer."""

    def __init__(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        local: IoAddr,
        remote: IoAddr,
        closer: Optional[Callable[[], None]] = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.local_addr = local
        self.remote_addr = remote
        self._closer = closer

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; an empty result means end of stream."""
        read_some = getattr(self._reader, "read1", self._reader.read)
        return read_some(size)

    def write(self, data: bytes) -> int:
        written = self._writer.write(data)
        self._writer.flush()
        return len(data) if written is None else written

    def close(self) -> None:
        if self._closer is not None:
            self._closer()

    def __enter__(self) -> "IoConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def dial(endpoint: str, *args: str) -> IoConn:
    """Start ``endpoint`` and talk to it through its stdin and stdout."""
    process = subprocess.Popen(
        [endpoint, *args],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
    )

    def _kill() -> None:
        process.kill()
        process.wait()
        for stream in (process.stdin, process.stdout):
            if stream is not None:
                stream.close()

    return IoConn(
        reader=process.stdout,
        writer=process.stdin,
        local=IoAddr(str(os.getpid())),
        remote=IoAddr(str(process.pid)),
        closer=_kill,
    )


def get_stdio_conn() -> IoConn:
    """A connection over this process's own stdin and stdout."""
    return IoConn(
        reader=sys.stdin.buffer,
        writer=sys.stdout.buffer,
        local=IoAddr(str(os.getpid())),
        remote=IoAddr("remote"),
    )