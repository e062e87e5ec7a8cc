# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Quota monitor for the Antigravity language server.

Finds the locally running language server, authenticates with the CSRF
token from its command line and polls GetUserStatus into QuotaSnapshots.
Also ships a generic 429 retry engine for rate-limited remote calls.
"""

from .connection import ConnectionManager, EventBus
from .context import MonitorContext
from .core import (
    AuthFailureError,
    ConnectionEvent,
    ConnectionProtocol,
    ConnectionState,
    ConnectionStatus,
    CreditsInfo,
    InvalidResponseError,
    ModelQuota,
    MonitorConfig,
    MonitorError,
    ProcessRecord,
    QuotaSnapshot,
    RateLimitedError,
    ServerConnectionInfo,
    TokenUsageInfo,
    TransportError,
    UpstreamApiError,
    UserInfo,
    load_monitor_config,
)
from .detection import ProcessDetector, get_platform_strategy
from .quota import format_time_until_reset, parse_user_status
from .retry import compute_backoff_ms, retry_on_rate_limit, with_retry
from .transport import HttpTransport

__version__ = "0.1.0"

__all__ = [
    "MonitorContext",
    "ConnectionManager",
    "EventBus",
    "ProcessDetector",
    "get_platform_strategy",
    "HttpTransport",
    "parse_user_status",
    "format_time_until_reset",
    "with_retry",
    "retry_on_rate_limit",
    "compute_backoff_ms",
    "MonitorConfig",
    "load_monitor_config",
    "ConnectionEvent",
    "ConnectionProtocol",
    "ConnectionState",
    "ConnectionStatus",
    "ServerConnectionInfo",
    "ProcessRecord",
    "CreditsInfo",
    "TokenUsageInfo",
    "UserInfo",
    "ModelQuota",
    "QuotaSnapshot",
    "MonitorError",
    "AuthFailureError",
    "InvalidResponseError",
    "TransportError",
    "UpstreamApiError",
    "RateLimitedError",
]
