"""Command-line options and default configuration of the host-side network proxy."""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Sequence
from urllib.parse import quote, urlsplit

from .models import Record, Zone

logger = logging.getLogger(__name__)

GATEWAY_IP = "192.168.127.1"
SSH_HOST_PORT = "192.168.127.2:22"
HOST_IP = "192.168.127.254"
HOST = "host"
GATEWAY = "gateway"
SUBNET = "192.168.127.0/24"
GATEWAY_MAC_ADDRESS = "5a:94:ef:00:00:dd"
GUEST_IP = "192.168.127.2"
GUEST_MAC_ADDRESS = "5a:94:ef:00:00:ee"
VPNKIT_UUID = "00000000-0000-0000-0000-000000000001"
CAPTURE_FILE = "capture.pcap"
RESOLV_CONF = "/etc/resolv.conf"

DEFAULT_MTU = 1500
DEFAULT_SSH_PORT = 2222
MIN_SSH_PORT = 1024
MAX_SSH_PORT = 65535

HYPERKIT_PROTOCOL = "hyperkit"
QEMU_PROTOCOL = "qemu"
BESS_PROTOCOL = "bess"
VFKIT_PROTOCOL = "vfkit"


class OptionsError(Exception):
    """The command line is invalid."""


@dataclass
class Options:
    """Everything the proxy can be told on its command line."""

    debug: bool = False
    mtu: int = DEFAULT_MTU
    ssh_port: int = DEFAULT_SSH_PORT
    endpoints: list[str] = field(default_factory=list)
    listen_vpnkit: str = ""
    listen_qemu: str = ""
    listen_bess: str = ""
    listen_stdio: str = ""
    listen_vfkit: str = ""
    forward_sock: list[str] = field(default_factory=list)
    forward_dest: list[str] = field(default_factory=list)
    forward_user: list[str] = field(default_factory=list)
    forward_identity: list[str] = field(default_factory=list)
    pid_file: str = ""
    log_file: str = ""

    @property
    def protocol(self) -> str:
        """The protocol spoken with the virtual machine, chosen by the listen options."""
        protocol = HYPERKIT_PROTOCOL
        if self.listen_qemu:
            protocol = QEMU_PROTOCOL
        if self.listen_bess:
            protocol = BESS_PROTOCOL
        if self.listen_vfkit:
            protocol = VFKIT_PROTOCOL
        return protocol


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise OptionsError(message)


def _flag(name: str) -> tuple[str, str]:
    return f"-{name}", f"--{name}"


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="gvproxy", description="User-mode network for virtual machines.")
    parser.add_argument(*_flag("listen"), dest="endpoints", action="append", default=[],
                        help="control endpoint")
    parser.add_argument(*_flag("debug"), action="store_true", help="Print debug info")
    parser.add_argument(*_flag("mtu"), type=int, default=DEFAULT_MTU, help="Set the MTU")
    parser.add_argument(*_flag("ssh-port"), dest="ssh_port", type=int, default=DEFAULT_SSH_PORT,
                        help="Port to access the guest virtual machine. "
                             "Must be between 1024 and 65535")
    parser.add_argument(*_flag("listen-vpnkit"), dest="listen_vpnkit", default="",
                        help="VPNKit socket to be used by Hyperkit")
    parser.add_argument(*_flag("listen-qemu"), dest="listen_qemu", default="",
                        help="Socket to be used by Qemu")
    parser.add_argument(*_flag("listen-bess"), dest="listen_bess", default="",
                        help="unixpacket socket to be used by Bess-compatible applications")
    parser.add_argument(*_flag("listen-stdio"), dest="listen_stdio", default="",
                        help="accept stdio pipe")
    parser.add_argument(*_flag("listen-vfkit"), dest="listen_vfkit", default="",
                        help="unixgram socket to be used by vfkit-compatible applications")
    parser.add_argument(*_flag("forward-sock"), dest="forward_sock", action="append", default=[],
                        help="Forwards a unix socket to the guest virtual machine over SSH")
    parser.add_argument(*_flag("forward-dest"), dest="forward_dest", action="append", default=[],
                        help="Forwards a unix socket to the guest virtual machine over SSH")
    parser.add_argument(*_flag("forward-user"), dest="forward_user", action="append", default=[],
                        help="SSH user to use for unix socket forward")
    parser.add_argument(*_flag("forward-identity"), dest="forward_identity", action="append",
                        default=[], help="Path to SSH identity key for forwarding")
    parser.add_argument(*_flag("pid-file"), dest="pid_file", default="",
                        help="Generate a file with the PID in it")
    parser.add_argument(*_flag("log-file"), dest="log_file", default="",
                        help="Output log messages to a given file path")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> Options:
    """Parse the command line into :class:`Options`; bad flags raise :class:`OptionsError`."""
    namespace = _build_parser().parse_args(list(argv) if argv is not None else None)
    return Options(**vars(namespace))


def _check_socket(value: str, name: str, scheme: Optional[str]) -> None:
    try:
        uri = urlsplit(value)
    except ValueError as err:
        raise OptionsError(f"invalid value for {name}: {err}") from None
    if scheme is not None and uri.scheme != scheme:
        raise OptionsError(f"{name} must be {scheme}:// address")
    if os.path.exists(uri.path) and (scheme is not None or uri.scheme == "unix"):
        raise OptionsError(f'"{uri.path}" already exists')


def validate(options: Options) -> None:
    """Check that the options make sense together; raise :class:`OptionsError` if not."""
    if options.listen_qemu:
        _check_socket(options.listen_qemu, "listen-qemu", None)
    if options.listen_bess:
        _check_socket(options.listen_bess, "listen-bess", "unixpacket")
    if options.listen_vfkit:
        _check_socket(options.listen_vfkit, "listen-vfkit", "unixgram")

    if options.listen_vpnkit and options.listen_qemu:
        raise OptionsError("cannot use qemu and vpnkit protocol at the same time")
    if options.listen_vpnkit and options.listen_bess:
        raise OptionsError("cannot use bess and vpnkit protocol at the same time")
    if options.listen_qemu and options.listen_bess:
        raise OptionsError("cannot use qemu and bess protocol at the same time")

    if not MIN_SSH_PORT <= options.ssh_port <= MAX_SSH_PORT:
        raise OptionsError("ssh-port value must be between 1024 and 65535")

    count = len(options.forward_sock)
    if any(len(values) != count for values in
           (options.forward_dest, options.forward_user, options.forward_identity)):
        raise OptionsError(
            "-forward-sock, --forward-dest, --forward-user, and --forward-identity must all "
            "be specified together, the same number of times, or not at all"
        )
    for identity in options.forward_identity:
        try:
            os.stat(identity)
        except OSError as err:
            raise OptionsError(f"Identity file {identity} can't be loaded: {err}") from None


def search_domains(path: Optional[str] = None) -> list[str]:
    """The search domains of the first ``search`` line of a resolv.conf file.

    With no ``path``, the system file is read on Linux and macOS only.
    """
    if path is None:
        if not sys.platform.startswith(("linux", "darwin")):
            return []
        path = RESOLV_CONF
    prefix = "search "
    try:
        with open(path, encoding="utf-8", errors="replace") as handle:
            for line in handle:
                line = line.rstrip("\r\n")
                if line.startswith(prefix):
                    domains = line[len(prefix):].split(" ")
                    logger.debug("Using search domains: %s", domains)
                    return domains
    except OSError as err:
        logger.error("open file error: %s", err)
    return []


def capture_file(debug: bool) -> str:
    """Where packets are captured: only in debug mode."""
    return CAPTURE_FILE if debug else ""


def _forward_source(source: str) -> str:
    if "://" in source:
        return source
    return f"unix://{source}"


def _forward_destination(user: str, path: str) -> str:
    return f"ssh://{quote(user, safe='')}@{SSH_HOST_PORT}{path}"


def _zone(name: str) -> Zone:
    return Zone(
        name=name,
        records=[Record(name=GATEWAY, ip=GATEWAY_IP), Record(name=HOST, ip=HOST_IP)],
    )


def default_configuration(options: Options) -> dict[str, Any]:
    """The virtual network configuration the options describe."""
    return {
        "debug": options.debug,
        "capture_file": capture_file(options.debug),
        "mtu": options.mtu,
        "subnet": SUBNET,
        "gateway_ip": GATEWAY_IP,
        "gateway_mac_address": GATEWAY_MAC_ADDRESS,
        "dhcp_static_leases": {GUEST_IP: GUEST_MAC_ADDRESS},
        "dns": [_zone("containers.internal."), _zone("docker.internal.")],
        "dns_search_domains": search_domains(),
        "forwards": {f"127.0.0.1:{options.ssh_port}": SSH_HOST_PORT},
        "nat": {HOST_IP: "127.0.0.1"},
        "gateway_virtual_ips": [HOST_IP],
        "vpnkit_uuid_mac_addresses": {VPNKIT_UUID: GUEST_MAC_ADDRESS},
        "protocol": options.protocol,
        "ssh_forwards": [
            {
                "source": _forward_source(source),
                "destination": _forward_destination(user, dest),
                "identity": identity,
            }
            for source, dest, user, identity in zip(
                options.forward_sock,
                options.forward_dest,
                options.forward_user,
                options.forward_identity,
            )
        ],
    }


@contextlib.contextmanager
def write_pid_file(path: str) -> Iterator[int]:
    """Write this process's PID to ``path`` and remove the file on exit."""
    pid = os.getpid()
    with open(path, "w", encoding="ascii") as handle:
        handle.write(str(pid))
    try:
        yield pid
    finally:
        try:
            os.remove(path)
        except OSError as err:
            logger.error("%s", err)