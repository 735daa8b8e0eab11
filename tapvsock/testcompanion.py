"""Companion servers for end-to-end tests: a fixed-answer DNS server and a greeting web server."""

from __future__ import annotations

import argparse
import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional, Sequence

import dns.exception
import dns.flags
import dns.message
import dns.rdataclass
import dns.rdatatype
import dns.rrset

logger = logging.getLogger(__name__)

ANSWER_IP = "1.2.3.4"
GREETING = b"Hello world!"
DNS_ADDRESS = ("", 53)
HTTP_ADDRESS = ("", 8080)


def build_reply(wire: bytes) -> bytes:
    """Answer every A question of the query in ``wire`` with a fixed address."""
    request = dns.message.from_wire(wire)
    reply = dns.message.make_response(request)
    reply.flags |= dns.flags.RA
    for question in reply.question:
        if question.rdtype == dns.rdatatype.A:
            reply.answer.append(
                dns.rrset.from_text(
                    question.name, 0, dns.rdataclass.IN, dns.rdatatype.A, ANSWER_IP
                )
            )
    return reply.to_wire()


def _serve_dns(sock: socket.socket) -> None:
    while True:
        try:
            data, peer = sock.recvfrom(65535)
        except OSError:
            return
        try:
            sock.sendto(build_reply(data), peer)
        except (dns.exception.DNSException, OSError) as err:
            logger.error("%s", err)


class _GreetingHandler(BaseHTTPRequestHandler):
    timeout = 10

    def _greet(self, with_body: bool = True) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(GREETING)))
        self.end_headers()
        if with_body:
            self.wfile.write(GREETING)

    def do_GET(self) -> None:
        self._greet()

    do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = do_GET

    def do_HEAD(self) -> None:
        self._greet(with_body=False)

    def log_message(self, format: str, *args) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


def make_http_server(address: tuple[str, int] = HTTP_ADDRESS) -> ThreadingHTTPServer:
    """An HTTP server answering every request with a greeting."""
    return ThreadingHTTPServer(address, _GreetingHandler)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="test-companion",
        description="Serve DNS on port 53 and HTTP on port 8080 for end-to-end tests.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        dns_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        dns_sock.bind(DNS_ADDRESS)
    except OSError as err:
        logger.critical("%s", err)
        return 1
    threading.Thread(target=_serve_dns, args=(dns_sock,), daemon=True).start()

    try:
        server = make_http_server(HTTP_ADDRESS)
    except OSError as err:
        logger.critical("%s", err)
        return 1
    with server:
        server.serve_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())