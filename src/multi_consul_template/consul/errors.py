"""Consul client exceptions."""

from __future__ import annotations

__all__ = [
    "ConsulError",
    "ConsulRequestError",
    "ConsulResponseError",
    "ConsulDecodeError",
]


class ConsulError(Exception):
    """Base class for failed Consul requests."""
    pass


class ConsulRequestError(ConsulError):
    """Transport failure (connection refused, reset, timeout)."""
    pass


class ConsulResponseError(ConsulError):
    """Consul answered with a non-2xx status.

    Attributes:
        status_code: HTTP status code
        message: Response body (truncated)
    """

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"[{status_code}] {message}")


class ConsulDecodeError(ConsulError):
    """The response body is not a valid KV listing."""
    pass
