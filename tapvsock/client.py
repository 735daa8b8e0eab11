"""HTTP client for the forwarder and DNS control API."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Optional

from .models import ExposeRequest, UnexposeRequest, Zone


class ClientError(Exception):
    """The control API answered with an error."""


class Client:
    """Talks to the control endpoint served at ``base``."""

    def __init__(self, base: str, timeout: Optional[float] = None) -> None:
        self.base = base
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: Any = None) -> tuple[int, bytes]:
        data = None
        headers = {}
        if payload is not None:
            data = json.dumps(payload).encode()
            headers["Content-Type"] = "application/json"
        request = urllib.request.Request(
            f"{self.base}{path}", data=data, headers=headers, method=method
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.status, response.read()
        except urllib.error.HTTPError as err:
            with err:
                return err.code, err.read()

    def _get_json(self, path: str) -> Any:
        status, body = self._request("GET", path)
        if status != 200:
            raise ClientError(f"unexpected status: {status}")
        return json.loads(body)

    def _post(self, path: str, payload: Any) -> None:
        status, body = self._request("POST", path, payload)
        if status != 200:
            raise ClientError(body.decode(errors="replace").strip())

    def list(self) -> list[ExposeRequest]:
        """All ports currently exposed."""
        data = self._get_json("/services/forwarder/all")
        return [ExposeRequest.from_dict(item) for item in data or []]

    def expose(self, req: ExposeRequest) -> None:
        self._post("/services/forwarder/expose", req.to_dict())

    def unexpose(self, req: UnexposeRequest) -> None:
        self._post("/services/forwarder/unexpose", req.to_dict())

    def list_dns(self) -> list[Zone]:
        """All DNS zones served locally."""
        data = self._get_json("/services/dns/all")
        return [Zone.from_dict(item) for item in data or []]

    def add_dns(self, req: Zone) -> None:
        self._post("/services/dns/add", req.to_dict())