"""Port forwarding from the host into the virtual network."""

from __future__ import annotations

import json
import logging
import os
import select
import socket
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence
from urllib.parse import parse_qs, urlsplit

from .models import ExposeRequest, TransportProtocol, UnexposeRequest
from .udp_proxy import UDPProxy

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2
_COPY_SIZE = 65536
_DIAL_TIMEOUT = 10.0


class ForwarderError(Exception):
    """A port could not be exposed or unexposed."""


def _split_host_port(hostport: str) -> tuple[str, str]:
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        rest = hostport[end + 1 :]
        if not rest.startswith(":"):
            raise ValueError(f"address {hostport}: missing port in address")
        return hostport[1:end], rest[1:]
    index = hostport.rfind(":")
    if index < 0:
        raise ValueError(f"address {hostport}: missing port in address")
    host = hostport[:index]
    if ":" in host:
        raise ValueError(f"address {hostport}: too many colons in address")
    return host, hostport[index + 1 :]


def remote(req: ExposeRequest, ip: str) -> str:
    """The request's remote address, taking the host from ``ip`` when the request has none."""
    remote_host, _ = _split_host_port(req.remote)
    if not remote_host:
        host, _ = _split_host_port(ip)
        return f"{host}{req.remote}"
    return req.remote


def first_value_or_empty(values: Optional[Sequence[str]]) -> str:
    """The first of ``values``, or an empty string."""
    return values[0] if values else ""


def tcpip_address(remote: str) -> tuple[str, int]:
    """Split an ``ipv4:port`` address into its host and port."""
    parts = remote.split(":")
    if len(parts) != 2:
        raise ValueError("invalid remote addr")
    host, port_text = parts
    try:
        socket.inet_aton(host)
        if host.count(".") != 3:
            raise OSError
    except OSError:
        raise ValueError(f"invalid remote addr: {host!r} is not an IPv4 address") from None
    port = int(port_text)
    if not 0 <= port <= 65535:
        raise ValueError(f"invalid port {port}")
    return host, port


def key(protocol: TransportProtocol | str, local: str) -> str:
    """The key a forwarded port is tracked under."""
    return f"{protocol}/{local}"


def _default_tcp_dialer(host: str, port: int) -> socket.socket:
    conn = socket.create_connection((host, port), timeout=_DIAL_TIMEOUT)
    conn.settimeout(None)
    return conn


def _default_udp_dialer(host: str, port: int) -> socket.socket:
    conn = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        conn.connect((host, port))
    except OSError:
        conn.close()
        raise
    return conn


def _listen(local: str, kind: int) -> socket.socket:
    host, port = _split_host_port(local)
    infos = socket.getaddrinfo(host or None, port, socket.AF_UNSPEC, kind, 0, socket.AI_PASSIVE)
    if not infos:
        raise OSError(f"cannot resolve {local}")
    family, socktype, proto, _, address = infos[0]
    sock = socket.socket(family, socktype, proto)
    try:
        if kind == socket.SOCK_STREAM:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(address)
        if kind == socket.SOCK_STREAM:
            sock.listen()
    except OSError:
        sock.close()
        raise
    return sock


def _listen_unix(path: str) -> socket.socket:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(path)
        sock.listen()
    except OSError:
        sock.close()
        raise
    return sock


def _pipe(source: socket.socket, sink: socket.socket) -> None:
    try:
        while True:
            data = source.recv(_COPY_SIZE)
            if not data:
                break
            sink.sendall(data)
    except OSError:
        pass
    finally:
        try:
            sink.shutdown(socket.SHUT_WR)
        except OSError:
            pass


class _StreamProxy:
    """Accepts stream connections and splices each one to a freshly dialled peer."""

    def __init__(
        self,
        listener: socket.socket,
        dial: Callable[[], socket.socket],
        unlink: Optional[str] = None,
    ) -> None:
        self._listener = listener
        self._listener.setblocking(False)
        self._dial = dial
        self._unlink = unlink
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._conns: set[socket.socket] = set()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _serve(self) -> None:
        while not self._closed.is_set():
            try:
                ready, _, _ = select.select([self._listener], [], [], _POLL_INTERVAL)
            except (OSError, ValueError):
                break
            if not ready:
                continue
            try:
                client, _ = self._listener.accept()
            except (BlockingIOError, InterruptedError):
                continue
            except OSError as err:
                if self._closed.is_set():
                    break
                logger.error("accept error: %s", err)
                continue
            client.setblocking(True)
            threading.Thread(target=self._handle, args=(client,), daemon=True).start()

    def _handle(self, client: socket.socket) -> None:
        try:
            upstream = self._dial()
        except (OSError, ValueError) as err:
            logger.error("cannot dial upstream: %s", err)
            client.close()
            return
        with self._lock:
            if self._closed.is_set():
                client.close()
                upstream.close()
                return
            self._conns.update((client, upstream))
        backward = threading.Thread(target=_pipe, args=(upstream, client), daemon=True)
        backward.start()
        _pipe(client, upstream)
        backward.join()
        with self._lock:
            self._conns.discard(client)
            self._conns.discard(upstream)
        client.close()
        upstream.close()

    def close(self) -> None:
        self._closed.set()
        self._listener.close()
        with self._lock:
            conns = list(self._conns)
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if self._unlink is not None:
            try:
                os.remove(self._unlink)
            except FileNotFoundError:
                pass


@dataclass
class _Proxy:
    local: str
    remote: str
    protocol: str
    closer: Callable[[], None]

    def to_dict(self) -> dict[str, str]:
        return {"local": self.local, "remote": self.remote, "protocol": self.protocol}


class PortsForwarder:
    """Keeps the set of exposed ports and the proxies serving them."""

    def __init__(
        self,
        tcp_dialer: Optional[Callable[[str, int], socket.socket]] = None,
        udp_dialer: Optional[Callable[[str, int], socket.socket]] = None,
    ) -> None:
        self._tcp_dialer = tcp_dialer or _default_tcp_dialer
        self._udp_dialer = udp_dialer or _default_udp_dialer
        self._lock = threading.Lock()
        self._proxies: dict[str, _Proxy] = {}

    def expose(self, protocol: TransportProtocol | str, local: str, remote: str) -> None:
        """Listen on ``local`` and forward everything to ``remote``."""
        try:
            protocol = TransportProtocol(protocol)
        except ValueError:
            raise ForwarderError(f"unknown protocol {protocol}") from None
        with self._lock:
            proxy_key = key(protocol, local)
            if proxy_key in self._proxies:
                raise ForwarderError("proxy already running")
            if protocol in (TransportProtocol.UNIX, TransportProtocol.NPIPE):
                closer = self._expose_socket(protocol, local, remote)
            elif protocol is TransportProtocol.UDP:
                closer = self._expose_udp(local, remote)
            else:
                closer = self._expose_tcp(local, remote)
            self._proxies[proxy_key] = _Proxy(local, remote, protocol.value, closer)

    def _expose_socket(
        self, protocol: TransportProtocol, local: str, remote: str
    ) -> Callable[[], None]:
        parsed = urlsplit(remote)
        try:
            port = parsed.port
        except ValueError as err:
            raise ForwarderError(f"failed to parse remote uri :{remote} : {err}") from None
        remote_addr = f"{parsed.hostname or ''}:{'' if port is None else port}"

        if parsed.scheme == "ssh-tunnel":
            query = parse_qs(parsed.query)
            if not first_value_or_empty(query.get("key")):
                raise ForwarderError("key not provided for unix-ssh connection")
            if parsed.path in ("", "/"):
                raise ForwarderError("remote uri must contain a path to a socket file")
            raise ForwarderError("ssh-tunnel forwarding is not available")
        if parsed.scheme != "tcp":
            raise ForwarderError(
                f"remote protocol for unix forwarder is not implemented: {parsed.scheme}"
            )
        host, target_port = tcpip_address(remote_addr)
        if protocol is TransportProtocol.NPIPE:
            raise ForwarderError("npipe listeners are not available on this platform")

        proxy = _StreamProxy(
            _listen_unix(local), lambda: self._tcp_dialer(host, target_port), unlink=local
        )
        proxy.start()
        return proxy.close

    def _expose_udp(self, local: str, remote: str) -> Callable[[], None]:
        host, port = tcpip_address(remote)
        listener = _listen(local, socket.SOCK_DGRAM)
        proxy = UDPProxy(listener, lambda: self._udp_dialer(host, port))
        threading.Thread(target=proxy.run, daemon=True).start()
        return proxy.close

    def _expose_tcp(self, local: str, remote: str) -> Callable[[], None]:
        host, port = tcpip_address(remote)
        proxy = _StreamProxy(
            _listen(local, socket.SOCK_STREAM), lambda: self._tcp_dialer(host, port)
        )
        proxy.start()
        return proxy.close

    def unexpose(self, protocol: TransportProtocol | str, local: str) -> None:
        """Stop forwarding ``local``."""
        with self._lock:
            proxy = self._proxies.pop(key(protocol, local), None)
        if proxy is None:
            raise ForwarderError("proxy not found")
        proxy.closer()

    def all(self) -> list[dict[str, str]]:
        """Every exposed port, sorted by local address then protocol."""
        with self._lock:
            proxies = sorted(self._proxies.values(), key=lambda p: (p.local, p.protocol))
        return [proxy.to_dict() for proxy in proxies]

    def handle_http(
        self, method: str, path: str, body: bytes = b"", remote_addr: str = ""
    ) -> tuple[int, bytes]:
        """Serve the control API; returns the HTTP status and the response body."""
        route = urlsplit(path).path
        if route == "/all":
            return 200, (json.dumps(self.all()) + "\n").encode()
        if route not in ("/expose", "/unexpose"):
            return 404, b"404 page not found\n"
        if method.upper() != "POST":
            return 400, b"post only\n"
        try:
            data = json.loads(body)
            if not isinstance(data, dict):
                raise ValueError(f"cannot decode a request from {type(data).__name__}")
            if route == "/expose":
                request: Any = ExposeRequest.from_dict(data)
            else:
                request = UnexposeRequest.from_dict(data)
        except (ValueError, TypeError) as err:
            return 400, f"{err}\n".encode()

        if route == "/unexpose":
            try:
                self.unexpose(request.protocol, request.local)
            except (ForwarderError, OSError) as err:
                return 500, f"{err}\n".encode()
            return 200, b""

        remote_address = request.remote
        if request.protocol not in (TransportProtocol.UNIX, TransportProtocol.NPIPE):
            try:
                remote_address = remote(request, remote_addr)
            except ValueError as err:
                return 400, f"{err}\n".encode()
        try:
            self.expose(request.protocol, request.local, remote_address)
        except (ForwarderError, ValueError, OSError) as err:
            return 500, f"{err}\n".encode()
        return 200, b""

    def close(self) -> None:
        """Stop every proxy."""
        with self._lock:
            proxies = list(self._proxies.values())
            self._proxies.clear()
        for proxy in proxies:
            proxy.closer()