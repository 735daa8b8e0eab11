"""Length-prefixed Ethernet frames as exchanged between the guest forwarder and the host."""

from __future__ import annotations

import struct
from typing import BinaryIO, Iterable, Optional

DEFAULT_MTU = 4000
DEFAULT_STOP_IF_EXIST = "eth0,ens3,enp0s1"
ETHERNET_MINIMUM_SIZE = 14
"""Size of an Ethernet header, added to the MTU to bound a frame."""

_SIZE = struct.Struct("<H")
_MAX_FRAME = 0xFFFF


class FrameError(Exception):
    """A frame could not be read or written."""


def contains(names: Iterable[str], name: str) -> bool:
    """Whether ``name`` is one of ``names``."""
    return name in names


def blocking_interface(expected: Iterable[str] | str, present: Iterable[str]) -> Optional[str]:
    """The first present interface that should stop the forwarder, if any.

    ``expected`` may be a list of names or a comma-separated string of them.
    """
    if isinstance(expected, str):
        expected = expected.split(",")
    names = set(expected)
    return next((iface for iface in present if contains(names, iface)), None)


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def read_frame(stream: BinaryIO, mtu: int = DEFAULT_MTU) -> Optional[bytes]:
    """Read one frame; ``None`` when the stream ends cleanly before a frame starts."""
    header = _read_exact(stream, _SIZE.size)
    if not header:
        return None
    if len(header) != _SIZE.size:
        raise FrameError(f"cannot read size from socket: unexpected size {len(header)}")
    (size,) = _SIZE.unpack(header)
    if size == 0:
        raise FrameError("unexpected size 0 != 0")
    limit = mtu + ETHERNET_MINIMUM_SIZE
    if size > limit:
        raise FrameError(f"frame of {size} bytes exceeds the limit of {limit}")
    payload = _read_exact(stream, size)
    if len(payload) != size:
        raise FrameError(
            f"cannot read payload from socket: unexpected size {len(payload)} != {size}"
        )
    return payload


def write_frame(stream: BinaryIO, frame: bytes) -> None:
    """Write ``frame`` preceded by its little-endian 16-bit length."""
    if len(frame) > _MAX_FRAME:
        raise FrameError(f"frame of {len(frame)} bytes is too large")
    stream.write(_SIZE.pack(len(frame)) + bytes(frame))
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()


def pump_frames(source: BinaryIO, sink: BinaryIO, mtu: int = DEFAULT_MTU) -> int:
    """Copy framed packets from ``source`` to ``sink`` as raw frames until the end.

    Returns the number of frames copied.
    """
    count = 0
    while (frame := read_frame(source, mtu)) is not None:
        try:
            sink.write(frame)
        except OSError as err:
            raise FrameError(f"cannot write packet to tap: {err}") from err
        count += 1
    return count