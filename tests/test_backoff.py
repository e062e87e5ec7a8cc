from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest

from quota_monitor.core.errors import RateLimitedError, UpstreamApiError
from quota_monitor.retry import (
    compute_backoff_ms,
    extract_error_body,
    get_upstream_retry_delay_ms,
    parse_duration_to_ms,
    retry_on_rate_limit,
    try_parse_json,
    with_retry,
)


class _RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class _StatusError(Exception):
    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"status {status}")
        self.status = status


def _rpc_body(*details: dict) -> dict:
    return {"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "details": list(details)}}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "value,expected",
    [
        ("295.285334ms", 295),
        ("0.295285334s", 295),
        ("2s", 2000),
        ("1500", 1500),
        (42, 42),
        (12.9, 12),
        (-3, 0),
        ("", None),
        ("soon", None),
        (None, None),
    ],
)
def test_parse_duration_to_ms(value, expected) -> None:
    assert parse_duration_to_ms(value) == expected


def test_try_parse_json_salvages_embedded_object() -> None:
    assert try_parse_json('HTTP 429: {"error": {"code": 429}} trailing') == {"error": {"code": 429}}
    assert try_parse_json('{"a": 1}') == {"a": 1}
    assert try_parse_json("no json here") is None
    assert try_parse_json("") is None


def test_extract_error_body_priority() -> None:
    raw = json.dumps(_rpc_body({"retryDelay": "1s"}))
    error = UpstreamApiError(429, raw_body=raw, message='{"ignored": true}')

    assert extract_error_body(error) == _rpc_body({"retryDelay": "1s"})


def test_extract_error_body_from_response_data() -> None:
    error = _StatusError(429)
    error.response = SimpleNamespace(status=429, data=_rpc_body({"retryDelay": "2s"}))

    assert extract_error_body(error) == _rpc_body({"retryDelay": "2s"})


def test_extract_error_body_from_message() -> None:
    error = _StatusError(429, 'Rate limited: {"error": {"details": []}}')

    assert extract_error_body(error) == {"error": {"details": []}}


def test_retry_delay_takes_maximum_hint() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    reset_at = (now + timedelta(seconds=3)).isoformat().replace("+00:00", "Z")
    error = RateLimitedError(
        raw_body=_rpc_body(
            {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "0.5s"},
            {
                "@type": "type.googleapis.com/google.rpc.ErrorInfo",
                "metadata": {"quotaResetDelay": "1200ms", "quotaResetTimeStamp": reset_at},
            },
        )
    )

    assert get_upstream_retry_delay_ms(error, now=now) == 3000


def test_reset_timestamp_in_past_is_zero() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    error = RateLimitedError(
        raw_body=_rpc_body({"metadata": {"quotaResetTimeStamp": "2025-12-31T23:59:00Z"}})
    )

    assert get_upstream_retry_delay_ms(error, now=now) == 0


def test_capacity_exhausted_floor() -> None:
    error = RateLimitedError(
        raw_body=_rpc_body({"reason": "MODEL_CAPACITY_EXHAUSTED"}, {"retryDelay": "200ms"})
    )

    assert get_upstream_retry_delay_ms(error) == 1000


def test_no_details_means_no_hint() -> None:
    assert get_upstream_retry_delay_ms(RateLimitedError()) is None
    assert get_upstream_retry_delay_ms(RateLimitedError(raw_body="plain text")) is None


def test_backoff_first_attempt_bounds() -> None:
    assert compute_backoff_ms(1, rng=lambda: 0.0) == 500  # 400 floored at 500
    assert compute_backoff_ms(1, rng=lambda: 0.999999) == 599
    for _ in range(50):
        assert 400 <= compute_backoff_ms(1) <= 600


def test_backoff_third_attempt_bounds() -> None:
    assert compute_backoff_ms(3, rng=lambda: 0.0) == 1600
    assert compute_backoff_ms(3, rng=lambda: 0.5) == 2000
    for _ in range(50):
        assert 1600 <= compute_backoff_ms(3) <= 2400


def test_backoff_is_capped() -> None:
    for attempt in (10, 20, 60):
        assert compute_backoff_ms(attempt, rng=lambda: 0.999999) <= 20_000
    assert compute_backoff_ms(1, explicit_delay_ms=60_000) == 20_000


def test_backoff_with_hint_respects_buffer() -> None:
    assert compute_backoff_ms(1, explicit_delay_ms=300, rng=lambda: 0.0) == 350
    for _ in range(50):
        assert compute_backoff_ms(1, explicit_delay_ms=300) >= 350


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def test_with_retry_retries_429_then_succeeds() -> None:
    sleep = _RecordingSleep()
    attempts: list[int] = []

    async def operation(attempt: int) -> str:
        attempts.append(attempt)
        if attempt < 2:
            raise RateLimitedError()
        return "ok"

    result = asyncio.run(with_retry(operation, max_retries=3, sleep=sleep))

    assert result == "ok"
    assert attempts == [0, 1, 2]
    assert len(sleep.calls) == 2
    assert 0.4 <= sleep.calls[0] <= 0.6
    assert 0.8 <= sleep.calls[1] <= 1.2


def test_with_retry_exhaustion_propagates_last_error() -> None:
    sleep = _RecordingSleep()
    errors = [RateLimitedError(message=f"try {i}") for i in range(3)]

    async def operation(attempt: int) -> None:
        raise errors[attempt]

    with pytest.raises(RateLimitedError) as exc_info:
        asyncio.run(with_retry(operation, max_retries=2, sleep=sleep))

    assert exc_info.value is errors[2]
    assert len(sleep.calls) == 2


def test_with_retry_does_not_retry_other_errors() -> None:
    sleep = _RecordingSleep()
    calls = 0

    async def operation(attempt: int) -> None:
        nonlocal calls
        calls += 1
        raise _StatusError(500)

    with pytest.raises(_StatusError):
        asyncio.run(with_retry(operation, sleep=sleep))

    assert calls == 1
    assert sleep.calls == []


def test_with_retry_should_retry_veto() -> None:
    sleep = _RecordingSleep()
    seen: list[tuple[int, int]] = []

    def should_retry(error: BaseException, attempt: int) -> bool:
        seen.append((getattr(error, "status_code", 0), attempt))
        return False

    async def operation(attempt: int) -> None:
        raise RateLimitedError()

    with pytest.raises(RateLimitedError):
        asyncio.run(with_retry(operation, should_retry=should_retry, sleep=sleep))

    assert seen == [(429, 0)]
    assert sleep.calls == []


def test_with_retry_uses_upstream_hint() -> None:
    sleep = _RecordingSleep()

    async def operation(attempt: int) -> str:
        if attempt == 0:
            raise RateLimitedError(raw_body=_rpc_body({"retryDelay": "3s"}))
        return "done"

    assert asyncio.run(with_retry(operation, max_retries=1, sleep=sleep)) == "done"
    assert sleep.calls[0] >= 3.05


def test_with_retry_zero_retries() -> None:
    async def operation(attempt: int) -> None:
        raise RateLimitedError()

    with pytest.raises(RateLimitedError):
        asyncio.run(with_retry(operation, max_retries=0, sleep=_RecordingSleep()))


def test_status_read_from_response_attribute() -> None:
    sleep = _RecordingSleep()

    class _HttpError(Exception):
        pass

    async def operation(attempt: int) -> int:
        if attempt == 0:
            error = _HttpError("too many requests")
            error.response = SimpleNamespace(status_code=429, data=None, text="")
            raise error
        return attempt

    assert asyncio.run(with_retry(operation, max_retries=1, sleep=sleep)) == 1
    assert len(sleep.calls) == 1


def test_retry_on_rate_limit_decorator() -> None:
    sleep = _RecordingSleep()
    calls: list[str] = []

    @retry_on_rate_limit(max_retries=2, sleep=sleep)
    async def fetch(name: str) -> str:
        calls.append(name)
        if len(calls) == 1:
            raise RateLimitedError()
        return f"hello {name}"

    assert asyncio.run(fetch("ada")) == "hello ada"
    assert calls == ["ada", "ada"]
    assert fetch.__name__ == "fetch"


def _unread_rate_limit_error() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://127.0.0.1:42100/GetUserStatus")
    response = httpx.Response(
        429,
        stream=httpx.ByteStream(json.dumps(_rpc_body({"retryDelay": "2s"})).encode()),
        request=request,
    )
    return httpx.HTTPStatusError("429 Too Many Requests", request=request, response=response)


def test_extract_error_body_tolerates_unread_stream() -> None:
    assert extract_error_body(_unread_rate_limit_error()) is None


def test_with_retry_handles_unread_streamed_response() -> None:
    sleep = _RecordingSleep()

    async def operation(attempt: int) -> str:
        if attempt == 0:
            raise _unread_rate_limit_error()
        return "ok"

    assert asyncio.run(with_retry(operation, max_retries=1, sleep=sleep)) == "ok"
    assert len(sleep.calls) == 1


def test_unread_streamed_response_error_propagates_unchanged() -> None:
    error = _unread_rate_limit_error()

    async def operation(attempt: int) -> None:
        raise error

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        asyncio.run(with_retry(operation, max_retries=1, sleep=_RecordingSleep()))

    assert exc_info.value is error
