# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Retry engine for rate-limited (429) remote calls.

Wraps any async operation. On a 429 the engine reads the server's retry
hints from the Google RPC error details (RetryInfo.retryDelay,
ErrorInfo.metadata.quotaResetDelay / quotaResetTimeStamp), computes a
jittered exponential wait that honors the hint, sleeps and tries again.
Every other error, and the last 429 once retries are exhausted, propagates
unchanged.

All timings in this module are milliseconds.
"""

import asyncio
import functools
import json
import logging
import math
import random
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

import httpx

from ..core.constants import (
    CAPACITY_EXHAUSTED_FLOOR_MS,
    CAPACITY_EXHAUSTED_REASON,
    DEFAULT_MAX_RETRIES,
    RATE_LIMIT_STATUS,
    RETRY_BASE_DELAY_MS,
    RETRY_HINT_BUFFER_MS,
    RETRY_JITTER_RATIO,
    RETRY_MAX_DELAY_MS,
    RETRY_MIN_DELAY_MS,
)
from ..core.errors import get_status_code
from ..quota.parser import parse_timestamp

lib_logger = logging.getLogger("quota_monitor")

T = TypeVar("T")

_MS_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*ms$", re.IGNORECASE)
_SECONDS_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*s$", re.IGNORECASE)


# =============================================================================
# HINT EXTRACTION
# =============================================================================


def parse_duration_to_ms(value: Any) -> Optional[int]:
    """
    Parse a protobuf-style duration into whole milliseconds.

    Accepts "295.285334ms", "0.295285334s", plain numbers and numeric
    strings (taken as milliseconds). Returns None if unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return max(0, int(math.floor(value)))
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    match = _MS_PATTERN.match(text)
    if match:
        return max(0, int(math.floor(float(match.group(1)))))

    match = _SECONDS_PATTERN.match(text)
    if match:
        return max(0, int(math.floor(float(match.group(1)) * 1000)))

    try:
        number = float(text)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return max(0, int(math.floor(number)))


def try_parse_json(value: Any) -> Optional[Dict[str, Any]]:
    """
    Decode a JSON object, salvaging one embedded in surrounding text.

    Error messages often look like "HTTP 429: {...}"; the outermost braces
    are tried when the whole string is not valid JSON.
    """
    if not value:
        return None
    if isinstance(value, dict):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        return None

    try:
        parsed = json.loads(value)
    except ValueError:
        first = value.find("{")
        last = value.rfind("}")
        if first == -1 or last <= first:
            return None
        try:
            parsed = json.loads(value[first : last + 1])
        except ValueError:
            return None
    return parsed if isinstance(parsed, dict) else None


def _response_body(response: Any) -> Any:
    """Body of a transport response (httpx.Response, HttpResponse, ...)."""
    data = getattr(response, "data", None)
    if data:
        return data
    json_method = getattr(response, "json", None)
    if callable(json_method):
        try:
            return json_method()
        except (ValueError, httpx.ResponseNotRead):
            pass
    try:
        return getattr(response, "text", None)
    except httpx.ResponseNotRead:
        return None


def extract_error_body(error: BaseException) -> Union[Dict[str, Any], str, None]:
    """
    Find the structured error body attached to an exception.

    Priority: the ``raw_body`` of an UpstreamApiError, the body of an
    attached ``response``, JSON salvaged from the message.
    """
    raw_body = getattr(error, "raw_body", None)
    if raw_body:
        return try_parse_json(raw_body) or (raw_body if isinstance(raw_body, str) else None)

    response = getattr(error, "response", None)
    if response is not None:
        body = _response_body(response)
        if body:
            return try_parse_json(body) or (body if isinstance(body, str) else None)

    return try_parse_json(str(error))


def get_upstream_retry_delay_ms(
    error: BaseException, now: Optional[datetime] = None
) -> Optional[int]:
    """
    Largest retry hint found in the error details, in milliseconds.

    Args:
        error: The failed call's exception
        now: Reference time for quotaResetTimeStamp (defaults to UTC now)

    Returns:
        The explicit hint, or None if the error carries none
    """
    body = extract_error_body(error)
    if not isinstance(body, dict):
        return None

    inner = body.get("error") if isinstance(body.get("error"), dict) else body
    details = inner.get("details")
    if not isinstance(details, list):
        return None

    now = now or datetime.now(timezone.utc)
    best: Optional[int] = None

    def consider(candidate: Optional[int]) -> None:
        nonlocal best
        if candidate is not None:
            best = candidate if best is None else max(best, candidate)

    for detail in details:
        if not isinstance(detail, dict):
            continue

        # google.rpc.RetryInfo
        consider(parse_duration_to_ms(detail.get("retryDelay")))

        # google.rpc.ErrorInfo
        metadata = detail.get("metadata")
        if isinstance(metadata, dict):
            consider(parse_duration_to_ms(metadata.get("quotaResetDelay")))
            reset_at = parse_timestamp(metadata.get("quotaResetTimeStamp"))
            if reset_at is not None:
                consider(max(0, int((reset_at - now).total_seconds() * 1000)))

        if detail.get("reason") == CAPACITY_EXHAUSTED_REASON:
            consider(CAPACITY_EXHAUSTED_FLOOR_MS)

    return best


# =============================================================================
# BACKOFF
# =============================================================================


def compute_backoff_ms(
    attempt: int,
    explicit_delay_ms: Optional[float] = None,
    rng: Callable[[], float] = random.random,
) -> int:
    """
    Wait before retry number ``attempt`` (1-based).

    Without a hint: 500ms doubling per attempt, +/-20% jitter, floored at
    500ms. With a hint the exponential series starts from the hint itself
    and the wait is never below hint + 50ms. Always capped at 20s.

    Args:
        attempt: The retry about to be made (1 for the first retry)
        explicit_delay_ms: Server-provided hint, if any
        rng: Source of uniform [0, 1) values for the jitter

    Returns:
        Milliseconds to wait
    """
    has_hint = explicit_delay_ms is not None and math.isfinite(explicit_delay_ms)
    base = max(0, int(math.floor(explicit_delay_ms))) if has_hint else RETRY_BASE_DELAY_MS
    exponential = min(RETRY_MAX_DELAY_MS, int(base * 2 ** max(0, attempt - 1)))

    jitter = (1 - RETRY_JITTER_RATIO) + rng() * (2 * RETRY_JITTER_RATIO)
    jittered = max(0, int(math.floor(exponential * jitter)))

    if has_hint:
        buffered = max(0, int(math.floor(explicit_delay_ms + RETRY_HINT_BUFFER_MS)))
        return min(RETRY_MAX_DELAY_MS, max(jittered, buffered))

    return min(RETRY_MAX_DELAY_MS, max(RETRY_MIN_DELAY_MS, jittered))


# =============================================================================
# ENGINE
# =============================================================================


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    should_retry: Optional[Callable[[BaseException, int], bool]] = None,
    log_prefix: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation(attempt)`` and retry it on 429 responses.

    Args:
        operation: Async callable receiving the attempt index (0 first)
        max_retries: Retries allowed after the first call
        should_retry: Predicate (error, attempt) that can veto a retry
        log_prefix: Prepended to the retry log line
        sleep: Awaitable sleep taking seconds

    Returns:
        Whatever the operation returned

    Raises:
        The operation's exception, unchanged, when it is not a 429, when
        retries are exhausted or when should_retry rejects it
    """
    retries = max(0, int(max_retries)) if max_retries else 0
    attempt = 0

    while True:
        try:
            return await operation(attempt)
        except Exception as error:
            if should_retry is not None and not should_retry(error, attempt):
                raise
            if get_status_code(error) != RATE_LIMIT_STATUS or attempt >= retries:
                raise

            next_attempt = attempt + 1
            hint_ms = get_upstream_retry_delay_ms(error)
            wait_ms = compute_backoff_ms(next_attempt, hint_ms)

            hint_text = f" (upstream hint: ~{hint_ms}ms)" if hint_ms is not None else ""
            lib_logger.info(
                f"{log_prefix}429 received, waiting {wait_ms}ms before retry "
                f"{next_attempt}/{retries}{hint_text}"
            )

            await sleep(wait_ms / 1000)
            attempt = next_attempt


def retry_on_rate_limit(
    max_retries: int = DEFAULT_MAX_RETRIES,
    should_retry: Optional[Callable[[BaseException, int], bool]] = None,
    log_prefix: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator form of with_retry for async functions.

    Usage:
        @retry_on_rate_limit(max_retries=5, log_prefix="[Quota] ")
        async def fetch(...):
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(
                lambda _attempt: func(*args, **kwargs),
                max_retries=max_retries,
                should_retry=should_retry,
                log_prefix=log_prefix,
                sleep=sleep,
            )

        return wrapper

    return decorator
