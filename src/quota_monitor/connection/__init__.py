# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Connection state machine and event publishing.

Public API:
    ConnectionManager: Discovery, authentication and polling
    EventBus: Subscribe/callback registry for connection events
"""

from .events import EventBus
from .manager import ConnectionManager

__all__ = ["ConnectionManager", "EventBus"]
