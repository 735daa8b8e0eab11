"""UDP forwarding with per-client connection tracking."""

from __future__ import annotations

import errno
import ipaddress
import logging
import select
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, NamedTuple

logger = logging.getLogger(__name__)

UDP_CONN_TRACK_TIMEOUT = 90.0
"""Seconds a tracked client connection may stay idle."""
UDP_BUF_SIZE = 65507
"""Largest datagram the proxy reads at once."""

_POLL_INTERVAL = 0.2
_CLOSED_MESSAGE = "use of closed network connection"


class ConnTrackKey(NamedTuple):
    """A client address split into integers so it can key a dict."""

    ip_high: int
    ip_low: int
    port: int


def conn_track_key(addr: tuple[Any, ...]) -> ConnTrackKey:
    """The tracking key of a ``(host, port, ...)`` socket address."""
    host, port = addr[0], addr[1]
    ip = ipaddress.ip_address(str(host).split("%", 1)[0])
    value = int(ip)
    if ip.version == 4:
        return ConnTrackKey(0, value, int(port))
    return ConnTrackKey(value >> 64, value & 0xFFFFFFFFFFFFFFFF, int(port))


def is_closed_error(err: BaseException) -> bool:
    """Whether ``err`` reports use of a socket that was already closed."""
    if isinstance(err, OSError) and err.errno in (errno.EBADF, errno.ENOTSOCK):
        return True
    return str(err).endswith(_CLOSED_MESSAGE)


def _closed_error() -> OSError:
    return OSError(errno.EBADF, _CLOSED_MESSAGE)


def _wait_readable(sock: Any, timeout: float) -> bool:
    try:
        ready, _, _ = select.select([sock], [], [], timeout)
    except (OSError, ValueError):
        raise _closed_error() from None
    return bool(ready)


@dataclass
class _Tracked:
    conn: Any
    deadline: float


class UDPProxy:
    """Relays datagrams from ``listener`` to connections made by ``dialer``, one per client.

    ``timeout`` is the idle time, in seconds, after which a tracked client
    connection is dropped; it may be changed before :meth:`run` starts.
    """

    def __init__(self, listener: Any, dialer: Callable[[], Any]) -> None:
        self.listener = listener
        self.dialer = dialer
        self.timeout = UDP_CONN_TRACK_TIMEOUT
        self._table: dict[ConnTrackKey, _Tracked] = {}
        self._lock = threading.Lock()
        self._closed = threading.Event()

    def _receive(self) -> tuple[bytes, Any]:
        if isinstance(self.listener, socket.socket):
            while True:
                if self._closed.is_set():
                    raise _closed_error()
                if _wait_readable(self.listener, _POLL_INTERVAL):
                    break
        return self.listener.recvfrom(UDP_BUF_SIZE)

    def run(self) -> None:
        """Forward traffic until the listener is closed or fails."""
        while True:
            try:
                data, addr = self._receive()
            except (OSError, ValueError) as err:
                if not is_closed_error(err) and not self._closed.is_set():
                    logger.debug("Stopping udp proxy (%s)", err)
                break

            key = conn_track_key(addr)
            with self._lock:
                tracked = self._table.get(key)
                if tracked is None:
                    try:
                        conn = self.dialer()
                    except OSError as err:
                        logger.error("Can't proxy a datagram to udp: %s", err)
                        continue
                    tracked = _Tracked(conn, time.monotonic() + self.timeout)
                    self._table[key] = tracked
                    threading.Thread(
                        target=self._reply_loop, args=(tracked, addr, key), daemon=True
                    ).start()

            tracked.deadline = time.monotonic() + self.timeout
            try:
                tracked.conn.send(data)
            except OSError as err:
                logger.error("Can't proxy a datagram to udp: %s", err)

    def _reply_loop(self, tracked: _Tracked, client_addr: Any, key: ConnTrackKey) -> None:
        conn = tracked.conn
        try:
            while not self._closed.is_set():
                remaining = tracked.deadline - time.monotonic()
                if remaining <= 0:
                    return
                if not _wait_readable(conn, min(remaining, _POLL_INTERVAL)):
                    continue
                try:
                    data = conn.recv(UDP_BUF_SIZE)
                except ConnectionRefusedError:
                    # Nothing listens on the proxied port yet; keep waiting until idle.
                    continue
                self.listener.sendto(data, client_addr)
                tracked.deadline = time.monotonic() + self.timeout
        except (OSError, ValueError):
            return
        finally:
            with self._lock:
                if self._table.get(key) is tracked:
                    del self._table[key]
            conn.close()

    def close(self) -> None:
        """Stop forwarding and close every tracked connection."""
        self._closed.set()
        self.listener.close()
        with self._lock:
            conns = [tracked.conn for tracked in self._table.values()]
        for conn in conns:
            conn.close()


class AutoStoppingListener:
    """Wraps a datagram socket so reads fail once it has been idle for ``timeout`` seconds."""

    def __init__(self, underlying: Any, timeout: float = UDP_CONN_TRACK_TIMEOUT) -> None:
        self.underlying = underlying
        self.timeout = timeout
        self._deadline = time.monotonic() + timeout
        self._closed = threading.Event()

    def _refresh(self) -> None:
        self._deadline = time.monotonic() + self.timeout

    def recvfrom(self, size: int) -> tuple[bytes, Any]:
        self._refresh()
        while True:
            if self._closed.is_set():
                raise _closed_error()
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("i/o timeout")
            if _wait_readable(self.underlying, min(remaining, _POLL_INTERVAL)):
                return self.underlying.recvfrom(size)

    def sendto(self, data: bytes, addr: Any) -> int:
        self._refresh()
        return self.underlying.sendto(data, addr)

    def settimeout(self, timeout: float | None) -> None:
        self.underlying.settimeout(timeout)

    def close(self) -> None:
        self._closed.set()
        self.underlying.close()