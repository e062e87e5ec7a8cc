# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Explicit context object for a host application.

Built once at startup and handed to whatever needs quota data, instead of a
process-global service instance. Closing it cancels polling, waits for
in-flight fetches and releases the HTTP client.

Usage:
    async with MonitorContext.create() as ctx:
        ctx.events.subscribe(ConnectionEvent.QUOTA_UPDATE, render)
        ctx.start()
        ...
"""

import logging
from typing import Optional

from .connection.events import EventBus
from .connection.manager import ConnectionManager
from .core.config import MonitorConfig, load_monitor_config
from .detection.detector import ProcessDetector
from .transport.http_client import HttpTransport

lib_logger = logging.getLogger("quota_monitor")


class MonitorContext:
    """Owns the transport, detector, event bus and connection manager."""

    def __init__(
        self,
        config: MonitorConfig,
        transport: HttpTransport,
        detector: ProcessDetector,
        events: EventBus,
        manager: ConnectionManager,
    ):
        self.config = config
        self.transport = transport
        self.detector = detector
        self.events = events
        self.manager = manager
        self._closed = False

    @classmethod
    def create(cls, config: Optional[MonitorConfig] = None) -> "MonitorContext":
        """
        Wire up all components.

        Args:
            config: Configuration; defaults to load_monitor_config(), i.e.
                    defaults plus QUOTA_MONITOR_* environment overrides
        """
        config = config or load_monitor_config()
        transport = HttpTransport(verify=config.verify_tls)
        detector = ProcessDetector(config=config, transport=transport)
        events = EventBus()
        manager = ConnectionManager(
            config=config,
            detector=detector,
            transport=transport,
            events=events,
        )
        return cls(config, transport, detector, events, manager)

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start polling. Must be called from within a running event loop."""
        if self._closed:
            raise RuntimeError("MonitorContext is closed")
        self.manager.start_polling()

    async def aclose(self) -> None:
        """Stop polling and release resources. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self.manager.aclose()
        await self.transport.aclose()
        self.events.clear()
        lib_logger.debug("MonitorContext closed")

    async def __aenter__(self) -> "MonitorContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
