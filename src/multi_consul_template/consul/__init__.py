"""Consul KV access: blocking recursive listings over HTTP."""

from __future__ import annotations

from .client import ConsulClient, parse_listing
from .errors import ConsulDecodeError, ConsulError, ConsulRequestError, ConsulResponseError
from .types import Endpoint, KVEntry, KVListing

__all__ = [
    "ConsulClient",
    "ConsulDecodeError",
    "ConsulError",
    "ConsulRequestError",
    "ConsulResponseError",
    "Endpoint",
    "KVEntry",
    "KVListing",
    "parse_listing",
]
