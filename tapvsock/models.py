"""Data types shared by the control API: DNS zones and port-forwarding requests."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class TransportProtocol(str, Enum):
    """Protocols a forwarded port can use."""

    UDP = "udp"
    TCP = "tcp"
    UNIX = "unix"
    NPIPE = "npipe"

    def __str__(self) -> str:
        return self.value


def _parse_ip(value: Any) -> Optional[IPAddress]:
    if value is None or value == "":
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    return ipaddress.ip_address(value)


def _parse_regexp(value: Any) -> Optional[re.Pattern]:
    if value is None or value == "":
        return None
    if isinstance(value, re.Pattern):
        return value
    return re.compile(value)


@dataclass
class Record:
    """A single A record inside a zone, matched by exact name or by pattern."""

    name: str = ""
    ip: Optional[IPAddress] = None
    regexp: Optional[re.Pattern] = None

    def __post_init__(self) -> None:
        self.ip = _parse_ip(self.ip)
        self.regexp = _parse_regexp(self.regexp)

    def matches(self, name: str) -> bool:
        """Whether this record answers for ``name`` (the name without its zone)."""
        if self.name and self.name == name:
            return True
        return self.regexp is not None and self.regexp.search(name) is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.name:
            data["name"] = self.name
        if self.ip is not None:
            data["ip"] = str(self.ip)
        if self.regexp is not None:
            data["regexp"] = self.regexp.pattern
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        return cls(
            name=data.get("name") or "",
            ip=_parse_ip(data.get("ip")),
            regexp=_parse_regexp(data.get("regexp")),
        )


@dataclass
class Zone:
    """A DNS zone served locally, with its records and an optional fallback address."""

    name: str
    records: list[Record] = field(default_factory=list)
    default_ip: Optional[IPAddress] = None

    def __post_init__(self) -> None:
        self.default_ip = _parse_ip(self.default_ip)
        self.records = list(self.records)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.name:
            data["name"] = self.name
        if self.records:
            data["records"] = [record.to_dict() for record in self.records]
        if self.default_ip is not None:
            data["defaultIP"] = str(self.default_ip)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Zone":
        return cls(
            name=data.get("name") or "",
            records=[Record.from_dict(item) for item in data.get("records") or []],
            default_ip=_parse_ip(data.get("defaultIP")),
        )


def _parse_protocol(value: Any) -> TransportProtocol:
    if not value:
        return TransportProtocol.TCP
    return TransportProtocol(value)


@dataclass
class ExposeRequest:
    """Ask the forwarder to expose ``local`` on the host and send traffic to ``remote``."""

    local: str
    remote: str = ""
    protocol: TransportProtocol = TransportProtocol.TCP

    def __post_init__(self) -> None:
        self.protocol = _parse_protocol(self.protocol)

    def to_dict(self) -> dict[str, Any]:
        return {"local": self.local, "remote": self.remote, "protocol": self.protocol.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExposeRequest":
        """Build a request; a missing or empty protocol means TCP."""
        return cls(
            local=data.get("local") or "",
            remote=data.get("remote") or "",
            protocol=_parse_protocol(data.get("protocol")),
        )


@dataclass
class UnexposeRequest:
    """Ask the forwarder to stop exposing ``local``."""

    local: str
    protocol: TransportProtocol = TransportProtocol.TCP

    def __post_init__(self) -> None:
        self.protocol = _parse_protocol(self.protocol)

    def to_dict(self) -> dict[str, Any]:
        return {"local": self.local, "protocol": self.protocol.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UnexposeRequest":
        """Build a request; a missing or empty protocol means TCP."""
        return cls(
            local=data.get("local") or "",
            protocol=_parse_protocol(data.get("protocol")),
        )