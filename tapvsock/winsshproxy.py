"""Argument handling, log formatting and thread-id bookkeeping of the SSH socket proxy."""

from __future__ import annotations

import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import NamedTuple, Optional, Sequence
from urllib.parse import SplitResult, urlsplit

ERR_BAD_ARGS = 0x000A
TID_FILE = "win-sshproxy.tid"
PANIC = logging.CRITICAL + 10
TRACE = 5

USAGE = (
    "Usage: {prog}(-debug) [name] [statedir] ([source] [dest] [identity])...  \n\n"
    "This facility proxies windows pipes and unix sockets over ssh using the "
    "specified identity."
)


class UsageError(Exception):
    """The command line does not follow the usage."""

    exit_code = ERR_BAD_ARGS


class EventType(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class Event(NamedTuple):
    """An event-log entry kind and its event id."""

    type: EventType
    event_id: int


def _level_name(level: int) -> str:
    if level >= PANIC:
        return "panic"
    if level >= logging.CRITICAL:
        return "fatal"
    if level >= logging.ERROR:
        return "error"
    if level >= logging.WARNING:
        return "warning"
    if level >= logging.INFO:
        return "info"
    if level >= logging.DEBUG:
        return "debug"
    return "trace"


def event_for_level(level: int) -> Optional[Event]:
    """The event-log entry a log record of ``level`` becomes."""
    return {
        "panic": Event(EventType.ERROR, 1002),
        "fatal": Event(EventType.ERROR, 1001),
        "error": Event(EventType.ERROR, 1000),
        "warning": Event(EventType.WARNING, 1000),
        "info": Event(EventType.INFO, 1000),
        "debug": Event(EventType.INFO, 1001),
        "trace": Event(EventType.INFO, 1001),
    }.get(_level_name(level))


class LogFormat(logging.Formatter):
    """Formats records as ``[level] name: message {key = value}...``."""

    def __init__(self, name: str) -> None:
        super().__init__()
        self.name = name

    def format(self, record: logging.LogRecord) -> str:
        text = f"[{_level_name(record.levelno):<5}] {self.name}: {record.getMessage()}"
        for key, value in (getattr(record, "fields", None) or {}).items():
            text += f" {{{key} = {value}}}"
        return text + "\n"


@dataclass
class ProxyArgs:
    """What the proxy was asked to do."""

    name: str = ""
    state_dir: str = ""
    sources: list[str] = field(default_factory=list)
    dests: list[str] = field(default_factory=list)
    identities: list[str] = field(default_factory=list)
    debug: bool = False
    show_version: bool = False


def _program_name() -> str:
    if sys.argv and sys.argv[0]:
        return os.path.basename(sys.argv[0])
    return "win-sshproxy"


def parse_args(argv: Optional[Sequence[str]] = None) -> ProxyArgs:
    """Parse the arguments following the program name."""
    args = list(sys.argv[1:] if argv is None else argv)
    debug = False
    if args and args[0] == "-version":
        return ProxyArgs(show_version=True)
    if args and args[0] == "-debug":
        debug = True
        args = args[1:]
    if len(args) < 5 or (len(args) - 2) % 3 != 0:
        raise UsageError(USAGE.format(prog=_program_name()))
    rest = args[2:]
    return ProxyArgs(
        name=args[0],
        state_dir=args[1],
        sources=rest[0::3],
        dests=rest[1::3],
        identities=rest[2::3],
        debug=debug,
    )


def parse_source(source: str) -> SplitResult:
    """The URL of a proxy source; a bare path means a unix socket."""
    if "://" in source:
        return urlsplit(source)
    return SplitResult("unix", "", source, "", "")


def save_thread_id(
    state_dir: str | os.PathLike,
    pid: Optional[int] = None,
    tid: Optional[int] = None,
) -> Path:
    """Record ``pid:tid`` in the state directory so callers can ask the proxy to quit."""
    if pid is None:
        pid = os.getpid()
    if tid is None:
        tid = threading.get_native_id()
    path = Path(state_dir) / TID_FILE
    path.write_text(f"{pid}:{tid}\n", encoding="ascii")
    return path


def read_thread_id(state_dir: str | os.PathLike) -> tuple[int, int]:
    """The ``(pid, tid)`` recorded by :func:`save_thread_id`."""
    text = (Path(state_dir) / TID_FILE).read_text(encoding="ascii").strip()
    pid_text, sep, tid_text = text.partition(":")
    if not sep:
        raise ValueError(f"malformed thread id file: {text!r}")
    return int(pid_text), int(tid_text)