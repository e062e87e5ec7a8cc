# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the quota monitor.

Dataclasses and enums shared by detection, parsing and the connection
manager. Snapshot types are frozen: every poll produces a new snapshot and
the previous one is only kept as "last known good".
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# =============================================================================
# ENUMS
# =============================================================================


class ConnectionProtocol(str, Enum):
    """URL scheme a language server port answered on."""

    HTTPS = "https"
    HTTP = "http"

    @property
    def alternate(self) -> "ConnectionProtocol":
        """The scheme to fall back to."""
        if self is ConnectionProtocol.HTTPS:
            return ConnectionProtocol.HTTP
        return ConnectionProtocol.HTTPS


class ConnectionState(str, Enum):
    """Observable connection state of the ConnectionManager."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionEvent(str, Enum):
    """Events published by the ConnectionManager."""

    CONNECTED = "connected"  # payload: ServerConnectionInfo
    DISCONNECTED = "disconnected"  # payload: reason string
    QUOTA_UPDATE = "quota_update"  # payload: QuotaSnapshot
    ERROR = "error"  # payload: Exception


# =============================================================================
# CONNECTION
# =============================================================================


@dataclass(frozen=True)
class ServerConnectionInfo:
    """
    Credentials of a discovered language server.

    Produced by a successful discovery and cleared on any authentication or
    transport failure so that the next fetch rediscovers the server.
    """

    port: int
    csrf_token: str
    pid: Optional[int] = None
    protocol: ConnectionProtocol = ConnectionProtocol.HTTPS


@dataclass(frozen=True)
class ProcessRecord:
    """A process-list line that looks like a language server."""

    pid: int
    extension_port: int
    csrf_token: str
    cmdline: str = ""  # Truncated, for logging


@dataclass(frozen=True)
class HttpResponse:
    """Response returned by a transport."""

    status_code: int
    data: Any
    protocol: ConnectionProtocol


# =============================================================================
# QUOTA SNAPSHOT
# =============================================================================


@dataclass(frozen=True)
class CreditsInfo:
    """
    Prompt or flow credit pool.

    Only built when the monthly allowance is positive; otherwise the pool is
    absent from the snapshot rather than zero-filled.
    """

    available: float
    monthly: float
    used_percentage: float
    remaining_percentage: float


@dataclass(frozen=True)
class TokenUsageInfo:
    """Combined view over both credit pools."""

    total_available: float
    total_monthly: float
    overall_remaining_percentage: float
    prompt_credits: Optional[CreditsInfo] = None
    flow_credits: Optional[CreditsInfo] = None


@dataclass(frozen=True)
class UserInfo:
    """Account and subscription details reported by the server."""

    name: Optional[str] = None
    email: Optional[str] = None
    tier: Optional[str] = None
    tier_id: Optional[str] = None
    tier_description: Optional[str] = None
    plan_name: Optional[str] = None
    teams_tier: Optional[str] = None
    upgrade_uri: Optional[str] = None
    upgrade_text: Optional[str] = None
    browser_enabled: Optional[bool] = None
    knowledge_base_enabled: Optional[bool] = None
    can_buy_more_credits: Optional[bool] = None
    monthly_prompt_credits: Optional[float] = None
    available_prompt_credits: Optional[float] = None


@dataclass(frozen=True)
class ModelQuota:
    """Quota of a single model."""

    label: str
    model_id: str
    remaining_percentage: float  # 0-100
    is_exhausted: bool
    reset_time: Optional[datetime]
    time_until_reset: str  # e.g. "Ready", "3m", "1h 30m"


@dataclass(frozen=True)
class QuotaSnapshot:
    """Normalized point-in-time view of the server's quota telemetry."""

    timestamp: datetime
    prompt_credits: Optional[CreditsInfo] = None
    flow_credits: Optional[CreditsInfo] = None
    token_usage: Optional[TokenUsageInfo] = None
    user_info: Optional[UserInfo] = None
    models: Tuple[ModelQuota, ...] = ()

    @property
    def exhausted_models(self) -> Tuple[ModelQuota, ...]:
        """Models whose quota is used up."""
        return tuple(m for m in self.models if m.is_exhausted)


# =============================================================================
# SERVICE STATUS
# =============================================================================


@dataclass
class ConnectionStatus:
    """Read-only status record exposed by the ConnectionManager."""

    connected: bool
    error: Optional[str] = None
    last_connected: Optional[float] = None  # Unix timestamp
    server_info: Optional[ServerConnectionInfo] = None
    last_snapshot: Optional[QuotaSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        """Summary suitable for JSON status endpoints (token masked)."""
        from .errors import mask_credential

        server: Optional[Dict[str, Any]] = None
        if self.server_info is not None:
            server = {
                "port": self.server_info.port,
                "pid": self.server_info.pid,
                "protocol": self.server_info.protocol.value,
                "csrf_token": mask_credential(self.server_info.csrf_token),
            }
        return {
            "connected": self.connected,
            "error": self.error,
            "last_connected": self.last_connected,
            "server_info": server,
            "last_snapshot_at": (
                self.last_snapshot.timestamp.isoformat()
                if self.last_snapshot
                else None
            ),
        }
