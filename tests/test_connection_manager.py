from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from quota_monitor.connection import ConnectionManager, EventBus
from quota_monitor.core.config import MonitorConfig
from quota_monitor.core.errors import AuthFailureError, TransportError
from quota_monitor.core.types import (
    ConnectionEvent,
    ConnectionProtocol,
    ConnectionState,
    HttpResponse,
    ServerConnectionInfo,
)


VALID_BODY = {
    "userStatus": {
        "name": "Ada",
        "planStatus": {
            "planInfo": {"monthlyPromptCredits": 1000},
            "availablePromptCredits": 250,
        },
    }
}


def _info(token: str = "abc123", port: int = 42100) -> ServerConnectionInfo:
    return ServerConnectionInfo(port=port, csrf_token=token, pid=4242)


def _ok(data: Any = None) -> HttpResponse:
    return HttpResponse(200, VALID_BODY if data is None else data, ConnectionProtocol.HTTPS)


class FakeDetector:
    def __init__(self, results: list[Optional[ServerConnectionInfo]], running: bool = False) -> None:
        self.results = list(results)
        self.calls = 0
        self.running = running

    async def detect(self, attempts=3, base_delay=1.5, verbose=False, silent=False):
        self.calls += 1
        # Yield so concurrent callers interleave
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0] if self.results else None

    async def is_running(self) -> bool:
        return self.running


class FakeTransport:
    def __init__(self, responses: list) -> None:
        self.responses = list(responses)
        self.requests: list[dict] = []

    async def request(self, hostname, port, path, method="POST", headers=None,
                      body=None, timeout=5.0, allow_fallback=True) -> HttpResponse:
        self.requests.append(
            {"hostname": hostname, "port": port, "path": path, "method": method,
             "headers": dict(headers or {}), "body": body, "timeout": timeout,
             "allow_fallback": allow_fallback}
        )
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _manager(detector, transport, config=None, clock=None, sleep=None):
    events = EventBus()
    recorded: list[tuple[str, Any]] = []
    for event in ConnectionEvent:
        events.subscribe(event, lambda payload, name=event.value: recorded.append((name, payload)))
    manager = ConnectionManager(
        config=config or MonitorConfig(),
        detector=detector,
        transport=transport,
        events=events,
        clock=clock or FakeClock(),
        sleep=sleep or RecordingSleep(),
    )
    return manager, recorded


def _names(recorded: list[tuple[str, Any]]) -> list[str]:
    return [name for name, _ in recorded]


def test_connect_publishes_connected_before_quota_update() -> None:
    detector = FakeDetector([_info()])
    transport = FakeTransport([_ok()])
    manager, recorded = _manager(detector, transport)

    assert asyncio.run(manager.connect()) is True

    assert _names(recorded) == ["connected", "quota_update"]
    assert manager.state is ConnectionState.CONNECTED
    assert manager.last_snapshot is not None
    assert manager.get_token_usage().total_monthly == 1000
    assert manager.get_user_info().name == "Ada"
    assert manager.get_status().error is None


def test_fetch_request_shape() -> None:
    transport = FakeTransport([_ok()])
    manager, _ = _manager(FakeDetector([_info()]), transport)

    asyncio.run(manager.connect())

    request = transport.requests[0]
    assert request["hostname"] == "127.0.0.1"
    assert request["port"] == 42100
    assert request["path"] == "/exa.language_server_pb.LanguageServerService/GetUserStatus"
    assert request["method"] == "POST"
    assert request["headers"] == {"Connect-Protocol-Version": "1", "X-Codeium-Csrf-Token": "abc123"}
    assert request["body"] == {
        "metadata": {"ideName": "antigravity", "extensionName": "antigravity", "locale": "en"}
    }
    assert request["timeout"] == 5.0
    assert request["allow_fallback"] is True


def test_concurrent_connect_is_single_flight() -> None:
    detector = FakeDetector([_info()])
    manager, recorded = _manager(detector, FakeTransport([_ok()]))

    async def run():
        return await asyncio.gather(manager.connect(), manager.connect())

    results = asyncio.run(run())

    assert sorted(results) == [False, True]
    assert detector.calls == 1
    assert _names(recorded).count("connected") == 1


def test_state_is_connecting_during_discovery() -> None:
    detector = FakeDetector([_info()])
    manager, _ = _manager(detector, FakeTransport([_ok()]))
    seen: list[ConnectionState] = []

    async def run():
        task = asyncio.ensure_future(manager.connect())
        await asyncio.sleep(0)
        seen.append(manager.state)
        await task

    asyncio.run(run())

    assert seen == [ConnectionState.CONNECTING]
    assert manager.state is ConnectionState.CONNECTED


def test_not_found_publishes_disconnected_once_per_streak() -> None:
    detector = FakeDetector([None])
    manager, recorded = _manager(detector, FakeTransport([_ok()]))

    assert asyncio.run(manager.connect()) is False
    assert asyncio.run(manager.connect()) is False

    assert _names(recorded) == ["disconnected"]
    assert recorded[0][1] == "Language server not found"
    assert manager.get_status().error == "Language server not found"
    assert manager.state is ConnectionState.DISCONNECTED


def test_fetch_within_backoff_skips_discovery() -> None:
    clock = FakeClock()
    detector = FakeDetector([None])
    manager, _ = _manager(detector, FakeTransport([_ok()]), clock=clock)

    asyncio.run(manager.connect())
    assert detector.calls == 1

    clock.now += 30
    assert asyncio.run(manager.fetch_quota()) is None
    assert detector.calls == 1

    clock.now += 31
    assert asyncio.run(manager.fetch_quota()) is None
    assert detector.calls == 2


def test_force_refresh_bypasses_backoff() -> None:
    detector = FakeDetector([None, _info()])
    transport = FakeTransport([_ok()])
    manager, recorded = _manager(detector, transport)

    asyncio.run(manager.connect())
    snapshot = asyncio.run(manager.force_refresh())

    assert snapshot is not None
    assert detector.calls == 2
    assert len(transport.requests) == 1
    assert _names(recorded) == ["disconnected", "connected", "quota_update"]


def test_fetch_quota_connects_when_disconnected() -> None:
    detector = FakeDetector([_info()])
    transport = FakeTransport([_ok()])
    manager, recorded = _manager(detector, transport)

    snapshot = asyncio.run(manager.fetch_quota())

    assert snapshot is not None
    assert len(transport.requests) == 1
    assert _names(recorded) == ["connected", "quota_update"]


def test_auth_failure_forces_rediscovery() -> None:
    detector = FakeDetector([_info("stale"), _info("fresh", port=42101)])
    transport = FakeTransport([HttpResponse(401, None, ConnectionProtocol.HTTPS), _ok()])
    manager, recorded = _manager(detector, transport)

    asyncio.run(manager.connect())

    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.get_status().error == "Authentication failed (401)"
    errors = [payload for name, payload in recorded if name == "error"]
    assert isinstance(errors[0], AuthFailureError)

    snapshot = asyncio.run(manager.fetch_quota())

    assert snapshot is not None
    assert detector.calls == 2
    assert transport.requests[-1]["headers"]["X-Codeium-Csrf-Token"] == "fresh"
    assert manager.server_info.port == 42101


def test_invalid_response_keeps_connection() -> None:
    transport = FakeTransport([HttpResponse(200, {"unexpected": True}, ConnectionProtocol.HTTPS)])
    manager, recorded = _manager(FakeDetector([_info()]), transport)

    asyncio.run(manager.connect())

    assert manager.state is ConnectionState.CONNECTED
    assert manager.get_status().error == "Invalid response: 200"
    assert "disconnected" not in _names(recorded)


def test_transport_error_drops_connection_and_keeps_snapshot() -> None:
    transport = FakeTransport([_ok(), TransportError("connection refused")])
    detector = FakeDetector([_info(), None])
    manager, recorded = _manager(detector, transport)

    asyncio.run(manager.connect())
    first = manager.last_snapshot
    assert asyncio.run(manager.fetch_quota()) is None

    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.last_snapshot is first
    assert manager.get_status().error == "connection refused"
    assert _names(recorded) == ["connected", "quota_update", "error", "disconnected"]

    # Rediscovery fails: same streak, no second disconnected event
    asyncio.run(manager.fetch_quota())
    assert _names(recorded).count("disconnected") == 1


def test_disconnected_is_published_again_after_reconnect() -> None:
    transport = FakeTransport(
        [_ok(), TransportError("connection reset"), _ok(), TransportError("connection reset")]
    )
    manager, recorded = _manager(FakeDetector([_info()]), transport)

    asyncio.run(manager.connect())
    assert asyncio.run(manager.fetch_quota()) is None
    assert asyncio.run(manager.fetch_quota()) is not None
    assert asyncio.run(manager.fetch_quota()) is None

    assert _names(recorded) == [
        "connected", "quota_update", "error", "disconnected",
        "connected", "quota_update", "error", "disconnected",
    ]


@pytest.mark.parametrize(
    "failure", [asyncio.TimeoutError(), ConnectionResetError("connection reset by peer")]
)
def test_raw_network_errors_drop_connection(failure) -> None:
    transport = FakeTransport([_ok(), failure])
    manager, recorded = _manager(FakeDetector([_info(), None]), transport)

    asyncio.run(manager.connect())
    assert asyncio.run(manager.fetch_quota()) is None

    assert manager.state is ConnectionState.DISCONNECTED
    assert _names(recorded) == ["connected", "quota_update", "error", "disconnected"]
    error = recorded[2][1]
    assert isinstance(error, TransportError)
    assert error.cause is failure


def test_rate_limited_fetch_is_retried() -> None:
    sleep = RecordingSleep()
    transport = FakeTransport([HttpResponse(429, None, ConnectionProtocol.HTTPS), _ok()])
    manager, _ = _manager(
        FakeDetector([_info()]), transport, config=MonitorConfig(fetch_max_retries=2), sleep=sleep
    )

    asyncio.run(manager.connect())

    assert manager.last_snapshot is not None
    assert len(transport.requests) == 2
    assert len(sleep.calls) == 1


def test_exhausted_rate_limit_keeps_connection() -> None:
    transport = FakeTransport([HttpResponse(429, None, ConnectionProtocol.HTTPS)])
    manager, recorded = _manager(
        FakeDetector([_info()]), transport, config=MonitorConfig(fetch_max_retries=1)
    )

    asyncio.run(manager.connect())

    assert manager.state is ConnectionState.CONNECTED
    assert manager.last_snapshot is None
    assert len(transport.requests) == 2
    assert "error" in _names(recorded)
    assert "disconnected" not in _names(recorded)


def test_disconnect_and_is_available() -> None:
    detector = FakeDetector([_info()], running=False)
    manager, recorded = _manager(detector, FakeTransport([_ok()]))

    asyncio.run(manager.connect())
    assert asyncio.run(manager.is_available()) is True

    manager.disconnect()

    assert manager.state is ConnectionState.DISCONNECTED
    assert recorded[-1] == ("disconnected", "Manual disconnect")
    assert asyncio.run(manager.is_available()) is False


def test_polling_fetches_immediately_and_repeats() -> None:
    transport = FakeTransport([_ok()])
    manager, recorded = _manager(
        FakeDetector([_info()]), transport, config=MonitorConfig(polling_interval=0.01)
    )

    async def run():
        manager.start_polling()
        manager.start_polling()
        await asyncio.sleep(0.05)
        assert manager.is_polling
        manager.stop_polling()
        manager.stop_polling()
        await manager.aclose()

    asyncio.run(run())

    assert not manager.is_polling
    assert _names(recorded).count("connected") == 1
    assert _names(recorded).count("quota_update") >= 2


def test_stop_polling_lets_in_flight_fetch_finish() -> None:
    class SlowTransport(FakeTransport):
        def __init__(self) -> None:
            super().__init__([_ok()])
            self.gate: Optional[asyncio.Event] = None

        async def request(self, *args, **kwargs):
            await self.gate.wait()
            return await super().request(*args, **kwargs)

    transport = SlowTransport()
    manager, recorded = _manager(FakeDetector([_info()]), transport)

    async def run():
        transport.gate = asyncio.Event()
        manager.start_polling()
        for _ in range(5):
            await asyncio.sleep(0)
        manager.stop_polling()
        transport.gate.set()
        await manager.aclose()

    asyncio.run(run())

    assert _names(recorded) == ["connected", "quota_update"]


def test_status_to_dict_masks_token() -> None:
    manager, _ = _manager(FakeDetector([_info("0123456789abcdef")]), FakeTransport([_ok()]))

    asyncio.run(manager.connect())
    status = manager.get_status().to_dict()

    assert status["connected"] is True
    assert status["server_info"]["csrf_token"] == "...cdef"
    assert status["last_snapshot_at"] is not None


def test_start_polling_rejects_non_positive_interval() -> None:
    config = MonitorConfig()
    config.polling_interval = 0
    transport = FakeTransport([_ok()])
    manager, _ = _manager(FakeDetector([_info()]), transport, config=config)

    async def run():
        with pytest.raises(ValueError, match="polling_interval"):
            manager.start_polling()
        await asyncio.sleep(0.01)

    asyncio.run(run())

    assert not manager.is_polling
    assert transport.requests == []
