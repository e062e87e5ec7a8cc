# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Connection manager for the Antigravity language server.

Owns the connection state machine:

    DISCONNECTED --connect()--> CONNECTING --found--> CONNECTED
         ^                          |                     |
         +------- not found --------+                     |
         +------- 401/403 or transport failure -----------+

and polls GetUserStatus on a fixed interval, publishing every new
QuotaSnapshot on the event bus.

All state lives on one asyncio event loop. The single-flight check in
connect() and the flag it sets happen with no await in between, so two
concurrent callers can never both run discovery. No lock is held across
the network call: state is read, the call is made, then state is written
back, and a failure only clears the connection it was made on.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set

from ..core.config import MonitorConfig
from ..core.constants import MSG_MANUAL_DISCONNECT, MSG_SERVER_NOT_FOUND, RATE_LIMIT_STATUS
from ..core.errors import (
    AuthFailureError,
    InvalidResponseError,
    MonitorError,
    RateLimitedError,
    TransportError,
)
from ..core.interfaces import Transport
from ..core.types import (
    ConnectionEvent,
    ConnectionState,
    ConnectionStatus,
    HttpResponse,
    QuotaSnapshot,
    ServerConnectionInfo,
    TokenUsageInfo,
    UserInfo,
)
from ..detection.detector import ProcessDetector
from ..quota.parser import parse_user_status
from ..retry.backoff import with_retry
from ..transport.http_client import HttpTransport
from .events import EventBus

lib_logger = logging.getLogger("quota_monitor")

AUTH_FAILURE_STATUSES = (401, 403)


class ConnectionManager:
    """
    Discovers, authenticates to and polls the local language server.

    Usage:
        manager = ConnectionManager(load_monitor_config())
        manager.events.subscribe(ConnectionEvent.QUOTA_UPDATE, on_snapshot)
        manager.start_polling()
        ...
        await manager.aclose()
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        detector: Optional[ProcessDetector] = None,
        transport: Optional[Transport] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the manager.

        Args:
            config: Monitor configuration; defaults to MonitorConfig()
            detector: Process detector; defaults to one validating candidates
                      through the transport
            transport: HTTP transport; defaults to an HttpTransport owned
                       (and closed) by this manager
            events: Event bus to publish on; a private one by default
            clock: Returns the current Unix time in seconds
            sleep: Awaitable sleep used by the 429 retry engine
        """
        self._config = config or MonitorConfig()
        self._owns_transport = transport is None
        self._transport = transport or HttpTransport(verify=self._config.verify_tls)
        self._detector = detector or ProcessDetector(
            config=self._config, transport=self._transport
        )
        self._events = events or EventBus()
        self._clock = clock
        self._sleep = sleep

        # Connection state
        self._server_info: Optional[ServerConnectionInfo] = None
        self._connecting = False
        self._last_failed_at: Optional[float] = None
        self._disconnect_reported = False

        # Published state
        self._last_snapshot: Optional[QuotaSnapshot] = None
        self._last_error: Optional[str] = None
        self._last_connected: Optional[float] = None

        # Polling
        self._poll_task: Optional[asyncio.Task] = None
        self._fetch_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # ACCESSORS
    # =========================================================================

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        if self._server_info is not None:
            return ConnectionState.CONNECTED
        if self._connecting:
            return ConnectionState.CONNECTING
        return ConnectionState.DISCONNECTED

    @property
    def server_info(self) -> Optional[ServerConnectionInfo]:
        return self._server_info

    @property
    def last_snapshot(self) -> Optional[QuotaSnapshot]:
        """Last successfully parsed snapshot; kept while disconnected."""
        return self._last_snapshot

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def get_user_info(self) -> Optional[UserInfo]:
        return self._last_snapshot.user_info if self._last_snapshot else None

    def get_token_usage(self) -> Optional[TokenUsageInfo]:
        return self._last_snapshot.token_usage if self._last_snapshot else None

    def get_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            connected=self._server_info is not None,
            error=self._last_error,
            last_connected=self._last_connected,
            server_info=self._server_info,
            last_snapshot=self._last_snapshot,
        )

    # =========================================================================
    # CONNECTION
    # =========================================================================

    async def connect(self, verbose: bool = False, silent: bool = False) -> bool:
        """
        Discover the language server and fetch quota once.

        Only one connect runs at a time; a concurrent call returns False
        immediately without running discovery.

        Args:
            verbose: Log detection steps at INFO level
            silent: Keep routine messages at DEBUG (used by polling)

        Returns:
            True if a server was found
        """
        return await self._connect(verbose=verbose, silent=silent, fetch_after=True)

    async def _connect(
        self, verbose: bool = False, silent: bool = False, fetch_after: bool = False
    ) -> bool:
        if self._connecting:
            self._log(silent, "[LS Service] Connection already in progress")
            return False

        self._connecting = True
        self._last_error = None
        try:
            self._log(silent, "[LS Service] Detecting language server...")
            info = await self._detector.detect(
                attempts=self._config.detect_attempts,
                base_delay=self._config.detect_base_delay,
                verbose=verbose,
                silent=silent,
            )

            if info is None:
                self._last_error = MSG_SERVER_NOT_FOUND
                self._last_failed_at = self._clock()
                if not self._disconnect_reported:
                    self._disconnect_reported = True
                    lib_logger.info("[LS Service] Language server not detected")
                    self._events.emit(ConnectionEvent.DISCONNECTED, MSG_SERVER_NOT_FOUND)
                return False

            self._server_info = info
            self._last_connected = self._clock()
            self._last_failed_at = None
            self._disconnect_reported = False
            lib_logger.info(
                f"[LS Service] Connected to language server on port {info.port} "
                f"({info.protocol.value})"
            )
            self._events.emit(ConnectionEvent.CONNECTED, info)

            if fetch_after:
                await self._fetch(info)
            return True

        except Exception as e:
            self._last_error = str(e) or type(e).__name__
            self._last_failed_at = self._clock()
            if silent:
                lib_logger.debug(f"[LS Service] Connection error: {e!r}")
            else:
                lib_logger.error(f"[LS Service] Connection error: {e!r}")
            self._events.emit(ConnectionEvent.ERROR, e)
            return False
        finally:
            self._connecting = False

    def disconnect(self) -> None:
        """Forget the server, stop polling and publish a disconnected event."""
        self._server_info = None
        self.stop_polling()
        self._events.emit(ConnectionEvent.DISCONNECTED, MSG_MANUAL_DISCONNECT)
        lib_logger.info("[LS Service] Disconnected")

    async def is_available(self) -> bool:
        """True if connected, otherwise whether a server process is running."""
        if self._server_info is not None:
            return True
        return await self._detector.is_running()

    # =========================================================================
    # QUOTA FETCHING
    # =========================================================================

    async def fetch_quota(self) -> Optional[QuotaSnapshot]:
        """
        Fetch and publish a fresh snapshot.

        While disconnected, does nothing for reconnect_backoff seconds after
        a failed discovery; otherwise reconnects first.

        Returns:
            The new snapshot, or None on any failure (see get_status().error)
        """
        info = self._server_info
        if info is None:
            if self._in_backoff():
                lib_logger.debug("[LS Service] Within reconnect backoff, skipping fetch")
                return None
            if not await self._connect(silent=True):
                return None
            info = self._server_info
            if info is None:
                return None
        return await self._fetch(info)

    async def force_refresh(self) -> Optional[QuotaSnapshot]:
        """User-triggered refresh: reconnects regardless of backoff, then fetches."""
        info = self._server_info
        if info is None:
            if not await self._connect():
                return None
            info = self._server_info
            if info is None:
                return None
        return await self._fetch(info)

    def _in_backoff(self) -> bool:
        return (
            self._last_failed_at is not None
            and self._clock() - self._last_failed_at < self._config.reconnect_backoff
        )

    async def _fetch(self, info: ServerConnectionInfo) -> Optional[QuotaSnapshot]:
        try:
            response = await self._request_user_status(info)
        except RateLimitedError as e:
            # Retries exhausted; the server is alive, keep the connection
            self._last_error = str(e)
            lib_logger.warning(f"[LS Service] GetUserStatus still rate limited: {e}")
            self._events.emit(ConnectionEvent.ERROR, e)
            return None
        except TransportError as e:
            self._drop(info, e)
            return None
        except (asyncio.TimeoutError, OSError) as e:
            self._drop(info, TransportError(str(e) or type(e).__name__, cause=e))
            return None
        except Exception as e:
            self._last_error = str(e) or type(e).__name__
            lib_logger.exception("[LS Service] Unexpected error while fetching quota")
            self._events.emit(ConnectionEvent.ERROR, e)
            return None

        if response.status_code in AUTH_FAILURE_STATUSES:
            self._drop(info, AuthFailureError(response.status_code))
            return None

        data = response.data
        snapshot: Optional[QuotaSnapshot] = None
        if isinstance(data, dict) and data.get("userStatus"):
            try:
                snapshot = parse_user_status(data, now=datetime.now(timezone.utc))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                lib_logger.warning(f"[LS Service] Could not parse GetUserStatus payload: {e!r}")

        if snapshot is None:
            error = InvalidResponseError(response.status_code)
            self._last_error = str(error)
            lib_logger.warning(f"[LS Service] {error}")
            self._events.emit(ConnectionEvent.ERROR, error)
            return None

        self._last_snapshot = snapshot
        self._last_error = None
        self._last_connected = self._clock()
        self._events.emit(ConnectionEvent.QUOTA_UPDATE, snapshot)
        return snapshot

    async def _request_user_status(self, info: ServerConnectionInfo) -> HttpResponse:
        """One GetUserStatus call, wrapped in the 429 retry engine if enabled."""
        retries = self._config.fetch_max_retries

        async def attempt(_attempt: int) -> HttpResponse:
            response = await self._transport.request(
                self._config.host,
                info.port,
                self._config.api_path,
                method="POST",
                headers=self._config.request_headers(info.csrf_token),
                body=self._config.request_metadata(),
                timeout=self._config.request_timeout,
                allow_fallback=True,
            )
            if retries > 0 and response.status_code == RATE_LIMIT_STATUS:
                raise RateLimitedError(raw_body=response.data)
            return response

        if retries > 0:
            return await with_retry(
                attempt,
                max_retries=retries,
                log_prefix="[LS Service] ",
                sleep=self._sleep,
            )
        return await attempt(0)

    def _drop(self, info: ServerConnectionInfo, error: MonitorError) -> None:
        """Clear a connection that failed auth or transport; forces rediscovery."""
        self._last_error = str(error)
        if self._server_info is info:
            self._server_info = None
        lib_logger.warning(f"[LS Service] Dropping connection on port {info.port}: {error}")

        self._events.emit(ConnectionEvent.ERROR, error)
        if not self._disconnect_reported:
            self._disconnect_reported = True
            self._events.emit(ConnectionEvent.DISCONNECTED, str(error))

    # =========================================================================
    # POLLING
    # =========================================================================

    def start_polling(self) -> None:
        """
        Fetch now and then every polling_interval seconds.

        Idempotent. Must be called from within a running event loop.

        Raises:
            ValueError: If polling_interval is not positive
        """
        if self.is_polling:
            return
        if self._config.polling_interval <= 0:
            raise ValueError(
                f"polling_interval must be positive, got {self._config.polling_interval!r}"
            )
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        lib_logger.info(
            f"[LS Service] Started polling every {self._config.polling_interval:g}s"
        )

    def stop_polling(self) -> None:
        """Cancel future polls; a fetch already in flight runs to completion."""
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        self._poll_task = None
        lib_logger.info("[LS Service] Stopped polling")

    async def _poll_loop(self) -> None:
        while True:
            self._spawn_fetch()
            await asyncio.sleep(self._config.polling_interval)

    def _spawn_fetch(self) -> None:
        task = asyncio.get_running_loop().create_task(self.fetch_quota())
        self._fetch_tasks.add(task)
        task.add_done_callback(self._on_fetch_done)

    def _on_fetch_done(self, task: asyncio.Task) -> None:
        self._fetch_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            lib_logger.error(
                f"[LS Service] Scheduled fetch failed: {task.exception()!r}"
            )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def aclose(self) -> None:
        """Stop polling, wait for in-flight fetches and close the transport."""
        poll_task = self._poll_task
        self.stop_polling()

        pending = list(self._fetch_tasks)
        if poll_task is not None:
            pending.append(poll_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self._owns_transport and isinstance(self._transport, HttpTransport):
            await self._transport.aclose()

    @staticmethod
    def _log(silent: bool, message: str) -> None:
        if silent:
            lib_logger.debug(message)
        else:
            lib_logger.info(message)
