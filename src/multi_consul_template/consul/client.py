"""Consul KV HTTP client.

Uses aiohttp to issue blocking recursive listings:

    GET /v1/kv/<prefix>?recurse&wait=10s&index=<cursor>

The response is a JSON array of ``{Key, Value, ModifyIndex}`` objects with
base64 values; the X-Consul-Index header is the cursor for the next call.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import ConsulDecodeError, ConsulRequestError, ConsulResponseError
from .types import Endpoint, KVEntry, KVListing

__all__ = ["ConsulClient", "parse_listing", "parse_index"]

logger = logging.getLogger(__name__)

DEFAULT_WAIT = "10s"
# Consul may hold a blocking query up to wait + wait/16
REQUEST_TIMEOUT_MARGIN = 15.0
INDEX_HEADER = "X-Consul-Index"


def _wait_seconds(wait: str) -> float:
    units = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
    for suffix in ("ms", "s", "m", "h"):
        if wait.endswith(suffix):
            try:
                return float(wait[: -len(suffix)]) * units[suffix]
            except ValueError:
                break
    raise ValueError(f"Invalid wait duration: {wait!r}")


def parse_index(value: str | None) -> int | None:
    """Parse an X-Consul-Index header value, None if missing or malformed."""
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class _KVRecord(BaseModel):
    """One object of a recursive KV listing, as Consul sends it."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    key: str = Field(alias="Key", strict=True)
    value: bytes = Field(default=b"", alias="Value")
    modify_index: int = Field(alias="ModifyIndex", strict=True)

    @field_validator("value", mode="before")
    @classmethod
    def _decode_value(cls, raw: Any) -> bytes:
        # Directories and empty keys come back with a null Value
        if raw is None:
            return b""
        if not isinstance(raw, str):
            raise ValueError("Value must be a base64 string or null")
        return base64.b64decode(raw, validate=True)


_LISTING = TypeAdapter(list[_KVRecord])


def parse_listing(data: Any) -> tuple[KVEntry, ...]:
    """Decode a recursive KV listing body.

    Args:
        data: Parsed JSON body

    Returns:
        Entries in response order

    Raises:
        ConsulDecodeError: If the body is not a list of KV objects
    """
    try:
        records = _LISTING.validate_python(data)
    except ValidationError as e:
        raise ConsulDecodeError(f"Malformed KV listing: {e}") from e
    return tuple(
        KVEntry(key=record.key, value=record.value, modify_index=record.modify_index)
        for record in records
    )


class ConsulClient:
    """Consul KV client.

    Example:
        client = ConsulClient(Endpoint.inet("localhost", 8500))
        listing = await client.list_prefix("services/templates", index=0)
        await client.close()
    """

    def __init__(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            connector: aiohttp.BaseConnector | None = None
            if self.endpoint.kind == "unix":
                connector = aiohttp.UnixConnector(path=self.endpoint.path or "")
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "ConsulClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def kv_url(self, prefix: str) -> str:
        return f"{self.endpoint.base_url}/v1/kv/{prefix.lstrip('/')}"

    async def list_prefix(
        self,
        prefix: str,
        *,
        index: int = 0,
        wait: str = DEFAULT_WAIT,
    ) -> KVListing:
        """List every key under ``prefix``, blocking until ``index`` is stale.

        A 404 is Consul's answer for a prefix without keys and yields an
        empty listing.

        Args:
            prefix: KV prefix to list recursively
            index: Cursor from the previous response, 0 for none
            wait: Maximum blocking time, Consul duration syntax

        Raises:
            ConsulRequestError: Transport failure or timeout
            ConsulResponseError: Non-2xx status other than 404
            ConsulDecodeError: Malformed body
        """
        url = self.kv_url(prefix)
        params = {"recurse": "", "wait": wait, "index": str(index)}
        timeout = aiohttp.ClientTimeout(total=_wait_seconds(wait) + REQUEST_TIMEOUT_MARGIN)
        session = await self._get_session()

        logger.debug(f"GET {url} index={index} wait={wait}")
        try:
            async with session.get(url, params=params, timeout=timeout) as resp:
                # aiohttp headers are case-insensitive
                cursor = parse_index(resp.headers.get(INDEX_HEADER))
                if resp.status == 404:
                    return KVListing(entries=(), index=cursor)
                if resp.status // 100 != 2:
                    error_text = await resp.text(errors="replace")
                    raise ConsulResponseError(resp.status, error_text[:500])
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise ConsulDecodeError(f"Invalid JSON from {url}: {e}") from e
        except aiohttp.ClientError as e:
            raise ConsulRequestError(f"GET {url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ConsulRequestError(f"GET {url} timed out") from e

        return KVListing(entries=parse_listing(data), index=cursor)
