# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Error handling for the quota monitor.

Taxonomy:
    AuthFailureError      401/403 from the language server; forces rediscovery
    InvalidResponseError  Payload missing or malformed; connection kept
    TransportError        Network failure or timeout; forces rediscovery
    UpstreamApiError      Non-2xx answer of an arbitrary remote call
    RateLimitedError      429; handled by the retry engine at call sites

"Language server not detected" is deliberately not an exception: detection
returns None and the ConnectionManager publishes a disconnected event.
"""

from typing import Any, Optional

from .constants import RATE_LIMIT_STATUS


class MonitorError(Exception):
    """Base class for all quota monitor errors."""


class AuthFailureError(MonitorError):
    """The language server rejected the CSRF token."""

    def __init__(self, status_code: int, message: Optional[str] = None):
        super().__init__(message or f"Authentication failed ({status_code})")
        self.status_code = status_code


class InvalidResponseError(MonitorError):
    """The language server answered without the expected payload."""

    def __init__(self, status_code: int, message: Optional[str] = None):
        super().__init__(message or f"Invalid response: {status_code}")
        self.status_code = status_code


class TransportError(MonitorError):
    """
    Network-level failure (connection refused, TLS failure, timeout).

    Attributes:
        message: Human-readable error message
        cause: The underlying transport exception, if any
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class UpstreamApiError(MonitorError):
    """
    A remote call returned an error status.

    Attributes:
        status_code: HTTP status of the failed call
        raw_body: Undecoded error body (string or already-parsed JSON)
    """

    def __init__(self, status_code: int, raw_body: Any = None, message: str = ""):
        super().__init__(message or f"Upstream API error ({status_code})")
        self.status_code = status_code
        self.raw_body = raw_body


class RateLimitedError(UpstreamApiError):
    """A remote call was rate limited (HTTP 429)."""

    def __init__(self, raw_body: Any = None, message: str = ""):
        super().__init__(
            RATE_LIMIT_STATUS, raw_body, message or "Rate limited (429)"
        )


# =============================================================================
# UTILITIES
# =============================================================================


def get_status_code(error: BaseException) -> Optional[int]:
    """
    Extract an HTTP-like status code from an arbitrary exception.

    Looks at ``status``, ``status_code`` and the attached ``response``
    (``status_code`` for httpx, ``status`` for aiohttp-style objects).
    """
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                continue

    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            value = getattr(response, attr, None)
            if value is not None:
                try:
                    return int(value)
                except (TypeError, ValueError):
                    continue
    return None


def is_rate_limit_error(error: BaseException) -> bool:
    """True if the exception carries a 429 status."""
    return get_status_code(error) == RATE_LIMIT_STATUS


def mask_credential(credential: Optional[str], style: str = "short") -> str:
    """
    Mask a secret for logging.

    Args:
        credential: Token to mask
        style: "short" keeps the last 4 characters, "full" keeps the first
               and last 4 characters

    Returns:
        Masked representation, never the full secret
    """
    if not credential:
        return "<none>"
    if len(credential) <= 8:
        return "****"
    if style == "full":
        return f"{credential[:4]}...{credential[-4:]}"
    return f"...{credential[-4:]}"


__all__ = [
    "MonitorError",
    "AuthFailureError",
    "InvalidResponseError",
    "TransportError",
    "UpstreamApiError",
    "RateLimitedError",
    "get_status_code",
    "is_rate_limit_error",
    "mask_credential",
]
