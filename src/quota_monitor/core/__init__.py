# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Core package for the quota monitor.

Provides shared infrastructure used by detection, transport, parsing and the
connection manager:
- types: Shared dataclasses and enums
- errors: All custom exceptions
- config: MonitorConfig and environment loading
- constants: Default values and wire constants
- interfaces: Protocols for collaborators
"""

from .types import (
    ConnectionProtocol,
    ConnectionState,
    ConnectionEvent,
    ServerConnectionInfo,
    ProcessRecord,
    HttpResponse,
    CreditsInfo,
    TokenUsageInfo,
    UserInfo,
    ModelQuota,
    QuotaSnapshot,
    ConnectionStatus,
)

from .errors import (
    MonitorError,
    AuthFailureError,
    InvalidResponseError,
    TransportError,
    UpstreamApiError,
    RateLimitedError,
    get_status_code,
    is_rate_limit_error,
    mask_credential,
)

from .config import MonitorConfig, load_monitor_config
from .interfaces import Transport, CommandRunner, AccountSelector, FormatConverter

__all__ = [
    # Types
    "ConnectionProtocol",
    "ConnectionState",
    "ConnectionEvent",
    "ServerConnectionInfo",
    "ProcessRecord",
    "HttpResponse",
    "CreditsInfo",
    "TokenUsageInfo",
    "UserInfo",
    "ModelQuota",
    "QuotaSnapshot",
    "ConnectionStatus",
    # Errors
    "MonitorError",
    "AuthFailureError",
    "InvalidResponseError",
    "TransportError",
    "UpstreamApiError",
    "RateLimitedError",
    "get_status_code",
    "is_rate_limit_error",
    "mask_credential",
    # Config
    "MonitorConfig",
    "load_monitor_config",
    # Interfaces
    "Transport",
    "CommandRunner",
    "AccountSelector",
    "FormatConverter",
]
