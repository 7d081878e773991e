"""Consul KV data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

__all__ = ["Endpoint", "KVEntry", "KVListing"]


@dataclass(frozen=True)
class Endpoint:
    """Address of the Consul HTTP API.

    Attributes:
        kind: "unix" for a local socket, "inet" for host/port
        path: Socket path (unix only)
        host: Host name (inet only)
        port: TCP port (inet only)
    """

    kind: Literal["unix", "inet"]
    path: str | None = None
    host: str | None = None
    port: int | None = None

    @classmethod
    def unix(cls, path: str) -> "Endpoint":
        return cls(kind="unix", path=path)

    @classmethod
    def inet(cls, host: str, port: int) -> "Endpoint":
        return cls(kind="inet", host=host, port=port)

    @property
    def base_url(self) -> str:
        if self.kind == "unix":
            # Host is ignored by the unix connector but required in the URL
            return "http://localhost"
        return f"http://{self.host}:{self.port}"

    def __str__(self) -> str:
        if self.kind == "unix":
            return f"unix://{self.path}"
        return f"tcp://{self.host}:{self.port}"


@dataclass(frozen=True)
class KVEntry:
    """One row of a recursive KV listing."""

    key: str
    value: bytes
    modify_index: int


@dataclass(frozen=True)
class KVListing:
    """Result of one (blocking) listing request.

    Attributes:
        entries: Every key currently under the prefix
        index: X-Consul-Index of the response, None if absent or unparseable
    """

    entries: tuple[KVEntry, ...] = field(default_factory=tuple)
    index: int | None = None
