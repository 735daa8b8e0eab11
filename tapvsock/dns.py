"""Local DNS service: answers names in configured zones and forwards the rest upstream."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import select
import socket
import struct
import threading
from typing import Iterable, Optional
from urllib.parse import urlsplit

import dns.exception
import dns.flags
import dns.message
import dns.query
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from .models import Zone

logger = logging.getLogger(__name__)

MAX_MSG_SIZE = 65535
MIN_MSG_SIZE = 512
UPSTREAM_TIMEOUT = 2.0
DEFAULT_RESOLV_CONF = "/etc/resolv.conf"

_POLL_INTERVAL = 0.2
_TCP_IDLE_TIMEOUT = 8.0


def get_dns_host_and_port(path: Optional[str] = None) -> tuple[str, int]:
    """The first usable nameserver of the system and its port.

    On Windows, with no ``path`` given, the first IPv4 nameserver known to the
    system is used; elsewhere ``path`` (``/etc/resolv.conf`` by default) is read.
    """
    if path is None:
        if os.name == "nt":
            return _windows_nameserver()
        path = DEFAULT_RESOLV_CONF
    with open(path, encoding="utf-8", errors="replace") as handle:
        for line in handle:
            fields = line.split()
            if len(fields) > 1 and fields[0] == "nameserver":
                try:
                    ipaddress.ip_address(fields[1])
                except ValueError:
                    continue
                return fields[1], 53
    raise ValueError(f"no nameserver found in {path}")


def _windows_nameserver() -> tuple[str, int]:
    import dns.resolver

    resolver = dns.resolver.Resolver()
    for nameserver in resolver.nameservers:
        try:
            address = ipaddress.ip_address(str(nameserver))
        except ValueError:
            continue
        if address.version == 4:
            return str(address), int(resolver.port)
    raise ValueError("no IPv4 nameserver configured")


def _a_record(name: dns.name.Name, ip) -> dns.rrset.RRset:
    return dns.rrset.from_text(name, 0, dns.rdataclass.IN, dns.rdatatype.A, str(ip))


def _truncate(message: dns.message.Message, size: int) -> bytes:
    """Render ``message`` in at most ``size`` bytes, dropping records and flagging TC."""
    size = max(size, MIN_MSG_SIZE)
    while True:
        try:
            return message.to_wire(max_size=size)
        except dns.exception.TooBig:
            if message.additional:
                message.additional.pop()
            elif message.authority:
                message.authority.pop()
                message.flags |= dns.flags.TC
            elif message.answer:
                message.answer.pop()
                message.flags |= dns.flags.TC
            else:
                raise


class DNSHandler:
    """Builds answers from local zones, falling back to an upstream nameserver."""

    def __init__(
        self,
        zones: Optional[Iterable[Zone]] = None,
        nameserver: Optional[tuple[str, int]] = None,
    ) -> None:
        self.zones: list[Zone] = list(zones or [])
        self.lock = threading.Lock()
        if nameserver is None:
            nameserver = get_dns_host_and_port()
        host, port = nameserver
        self.nameserver = (host, int(port))

    def add_local_answers(self, message: dns.message.Message, question: dns.rrset.RRset) -> bool:
        """Answer ``question`` from the zones; True when the question is settled locally."""
        qname = question.name.to_text()
        with self.lock:
            for zone in self.zones:
                suffix = f".{zone.name}"
                if not qname.endswith(suffix):
                    continue
                if question.rdtype != dns.rdatatype.A:
                    return False
                without_zone = qname[: -len(suffix)]
                for record in zone.records:
                    if record.matches(without_zone):
                        message.answer.append(_a_record(question.name, record.ip))
                        return True
                if zone.default_ip is not None:
                    message.answer.append(_a_record(question.name, zone.default_ip))
                    return True
                message.set_rcode(dns.rcode.NXDOMAIN)
                return True
        return False

    def add_answers(self, request: dns.message.Message, tcp: bool = False) -> dns.message.Message:
        """The response to ``request``, local if possible, otherwise from upstream."""
        response = dns.message.make_response(request)
        response.flags |= dns.flags.RA
        for question in response.question:
            if self.add_local_answers(response, question):
                return response
            # Only IPv4 is supported: AAAA questions get an empty answer.
            if question.rdtype == dns.rdatatype.AAAA:
                return response

        host, port = self.nameserver
        exchange = dns.query.tcp if tcp else dns.query.udp
        try:
            return exchange(request, host, port=port, timeout=UPSTREAM_TIMEOUT)
        except (dns.exception.DNSException, OSError) as err:
            logger.error("Error during DNS Exchange: %s", err)
            response.set_rcode(dns.rcode.NXDOMAIN)
            return response

    def handle(self, wire: bytes, tcp: bool = False) -> bytes:
        """Answer a query in wire format, truncated to what the client accepts."""
        request = dns.message.from_wire(wire)
        response = self.add_answers(request, tcp)
        size = MAX_MSG_SIZE if tcp else MIN_MSG_SIZE
        if request.edns >= 0:
            size = request.payload
        return _truncate(response, size)


def _recv_exact(conn: socket.socket, size: int) -> Optional[bytes]:
    data = bytearray()
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            return None
        data += chunk
    return bytes(data)


class DNSServer:
    """Serves DNS over UDP and TCP sockets and exposes a small HTTP control API."""

    def __init__(
        self,
        udp_sock: Optional[socket.socket],
        tcp_sock: Optional[socket.socket],
        zones: Optional[Iterable[Zone]] = None,
        nameserver: Optional[tuple[str, int]] = None,
    ) -> None:
        self.udp_sock = udp_sock
        self.tcp_sock = tcp_sock
        self.handler = DNSHandler(zones, nameserver)

    @property
    def zones(self) -> list[Zone]:
        with self.handler.lock:
            return list(self.handler.zones)

    def serve(self) -> None:
        """Answer UDP queries until the socket is closed."""
        sock = self.udp_sock
        if sock is None:
            raise ValueError("no UDP socket to serve on")
        while sock.fileno() != -1:
            try:
                ready, _, _ = select.select([sock], [], [], _POLL_INTERVAL)
            except (OSError, ValueError):
                return
            if not ready:
                continue
            try:
                data, peer = sock.recvfrom(MAX_MSG_SIZE)
            except OSError:
                continue
            threading.Thread(
                target=self._answer_udp, args=(sock, data, peer), daemon=True
            ).start()

    def _answer_udp(self, sock: socket.socket, data: bytes, peer) -> None:
        try:
            reply = self.handler.handle(data, tcp=False)
        except (dns.exception.DNSException, ValueError) as err:
            logger.debug("dropping DNS query from %s: %s", peer, err)
            return
        try:
            sock.sendto(reply, peer)
        except OSError as err:
            logger.error("%s", err)

    def serve_tcp(self) -> None:
        """Answer TCP queries until the listening socket is closed."""
        listener = self.tcp_sock
        if listener is None:
            raise ValueError("no TCP socket to serve on")
        while listener.fileno() != -1:
            try:
                ready, _, _ = select.select([listener], [], [], _POLL_INTERVAL)
            except (OSError, ValueError):
                return
            if not ready:
                continue
            try:
                conn, _ = listener.accept()
            except OSError:
                continue
            threading.Thread(target=self._serve_tcp_conn, args=(conn,), daemon=True).start()

    def _serve_tcp_conn(self, conn: socket.socket) -> None:
        with conn:
            conn.settimeout(_TCP_IDLE_TIMEOUT)
            while True:
                try:
                    header = _recv_exact(conn, 2)
                    if header is None:
                        return
                    (length,) = struct.unpack("!H", header)
                    wire = _recv_exact(conn, length)
                    if wire is None:
                        return
                    reply = self.handler.handle(wire, tcp=True)
                    conn.sendall(struct.pack("!H", len(reply)) + reply)
                except (OSError, dns.exception.DNSException, ValueError) as err:
                    logger.debug("closing DNS TCP connection: %s", err)
                    return

    def add_zone(self, zone: Zone) -> None:
        """Add ``zone``; a zone of the same name is replaced, its records kept after the new ones."""
        with self.handler.lock:
            zones = self.handler.zones
            for index, existing in enumerate(zones):
                if existing.name == zone.name:
                    zones[index] = Zone(
                        name=zone.name,
                        records=[*zone.records, *existing.records],
                        default_ip=zone.default_ip,
                    )
                    return
            zones.append(zone)

    def handle_http(self, method: str, path: str, body: bytes = b"") -> tuple[int, bytes]:
        """Serve the control API; returns the HTTP status and the response body."""
        route = urlsplit(path).path
        if route == "/all":
            with self.handler.lock:
                payload = [zone.to_dict() for zone in self.handler.zones]
            return 200, (json.dumps(payload) + "\n").encode()
        if route == "/add":
            if method.upper() != "POST":
                return 400, b"post only\n"
            try:
                data = json.loads(body)
                if data is None:
                    zone = Zone(name="")
                elif isinstance(data, dict):
                    zone = Zone.from_dict(data)
                else:
                    raise ValueError(f"cannot decode a zone from {type(data).__name__}")
            except (ValueError, TypeError, AttributeError) as err:
                return 400, f"{err}\n".encode()
            self.add_zone(zone)
            return 200, b""
        return 404, b"404 page not found\n"