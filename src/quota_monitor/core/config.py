# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Configuration for the quota monitor.

MonitorConfig holds every tunable of the detector, transport and connection
manager. load_monitor_config() starts from the defaults in constants.py and
applies environment overrides (environment variables ALWAYS win):

    QUOTA_MONITOR_HOST                 Loopback host of the language server
    QUOTA_MONITOR_POLLING_INTERVAL     Seconds between polls
    QUOTA_MONITOR_RECONNECT_BACKOFF    Seconds to wait after a failed connect
    QUOTA_MONITOR_REQUEST_TIMEOUT      Seconds before a telemetry call times out
    QUOTA_MONITOR_DETECT_ATTEMPTS      Discovery attempts per connect
    QUOTA_MONITOR_DETECT_BASE_DELAY    Seconds between first and second attempt
    QUOTA_MONITOR_COMMAND_TIMEOUT      Seconds before a listing command is killed
    QUOTA_MONITOR_FETCH_MAX_RETRIES    429 retries around the telemetry call
    QUOTA_MONITOR_VERIFY_TLS           Verify the server's self-signed cert
    QUOTA_MONITOR_DETECT_STRATEGY      "ps" or "proc"
    QUOTA_MONITOR_IDE_NAME / _EXTENSION_NAME / _LOCALE
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

from .constants import (
    CSRF_TOKEN_HEADER,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONNECT_DETECT_ATTEMPTS,
    DEFAULT_DETECT_BASE_DELAY,
    DEFAULT_EXTENSION_NAME,
    DEFAULT_HOST,
    DEFAULT_IDE_NAME,
    DEFAULT_LOCALE,
    DEFAULT_POLLING_INTERVAL,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_RECONNECT_BACKOFF,
    DEFAULT_REQUEST_TIMEOUT,
    ENV_PREFIX,
    PROTOCOL_VERSION_HEADER,
    USER_STATUS_PATH,
)

lib_logger = logging.getLogger("quota_monitor")

VALID_DETECT_STRATEGIES = ("ps", "proc")

# Must be greater than zero
POSITIVE_FIELDS = (
    "polling_interval",
    "request_timeout",
    "probe_timeout",
    "command_timeout",
    "detect_attempts",
)


# =============================================================================
# ENVIRONMENT HELPERS
# =============================================================================


def env_bool(key: str, default: bool = False, env: Optional[Mapping[str, str]] = None) -> bool:
    """Get boolean from environment variable."""
    source = os.environ if env is None else env
    return source.get(key, str(default).lower()).lower() in ("true", "1", "yes")


# =============================================================================
# MONITOR CONFIGURATION
# =============================================================================


@dataclass
class MonitorConfig:
    """
    Settings for discovering and polling the language server.

    Durations are in seconds. Retry engine timings are fixed constants in
    milliseconds and are not part of this config.
    """

    host: str = DEFAULT_HOST
    api_path: str = USER_STATUS_PATH
    polling_interval: float = DEFAULT_POLLING_INTERVAL
    reconnect_backoff: float = DEFAULT_RECONNECT_BACKOFF
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    detect_attempts: int = DEFAULT_CONNECT_DETECT_ATTEMPTS
    detect_base_delay: float = DEFAULT_DETECT_BASE_DELAY
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    ide_name: str = DEFAULT_IDE_NAME
    extension_name: str = DEFAULT_EXTENSION_NAME
    locale: str = DEFAULT_LOCALE
    fetch_max_retries: int = 0  # 0 = no 429 retry around the telemetry call
    verify_tls: bool = False  # The language server uses a self-signed cert
    detect_strategy: Optional[str] = None  # None = platform default
    extra_headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        for attr in POSITIVE_FIELDS:
            value = getattr(self, attr)
            if value <= 0:
                raise ValueError(f"MonitorConfig.{attr} must be positive, got {value!r}")

    def request_headers(self, csrf_token: str) -> Dict[str, str]:
        """Headers that authenticate a GetUserStatus call."""
        headers = {
            PROTOCOL_VERSION_HEADER: "1",
            CSRF_TOKEN_HEADER: csrf_token,
        }
        headers.update(self.extra_headers)
        return headers

    def request_metadata(self) -> Dict[str, Any]:
        """JSON body sent with every GetUserStatus call."""
        return {
            "metadata": {
                "ideName": self.ide_name,
                "extensionName": self.extension_name,
                "locale": self.locale,
            }
        }


# (env suffix, attribute, parser)
_ENV_OVERRIDES = (
    ("HOST", "host", str),
    ("API_PATH", "api_path", str),
    ("POLLING_INTERVAL", "polling_interval", float),
    ("RECONNECT_BACKOFF", "reconnect_backoff", float),
    ("REQUEST_TIMEOUT", "request_timeout", float),
    ("PROBE_TIMEOUT", "probe_timeout", float),
    ("DETECT_ATTEMPTS", "detect_attempts", int),
    ("DETECT_BASE_DELAY", "detect_base_delay", float),
    ("COMMAND_TIMEOUT", "command_timeout", float),
    ("IDE_NAME", "ide_name", str),
    ("EXTENSION_NAME", "extension_name", str),
    ("LOCALE", "locale", str),
    ("FETCH_MAX_RETRIES", "fetch_max_retries", int),
)


def load_monitor_config(
    env: Optional[Mapping[str, str]] = None,
    base: Optional[MonitorConfig] = None,
) -> MonitorConfig:
    """
    Build a MonitorConfig from defaults plus environment overrides.

    Invalid values are logged and ignored, leaving the default in place.

    Args:
        env: Mapping to read instead of os.environ (tests)
        base: Starting config, copied before overrides are applied;
              defaults to MonitorConfig()

    Returns:
        The resulting configuration
    """
    source = os.environ if env is None else env
    if base is not None:
        config = replace(base, extra_headers=dict(base.extra_headers))
    else:
        config = MonitorConfig()

    for suffix, attr, parser in _ENV_OVERRIDES:
        key = f"{ENV_PREFIX}{suffix}"
        raw = source.get(key)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = parser(raw.strip())
        except ValueError:
            lib_logger.warning(f"Ignoring invalid value for {key}: {raw!r}")
            continue
        if isinstance(value, (int, float)) and value < 0:
            lib_logger.warning(f"Ignoring negative value for {key}: {raw!r}")
            continue
        if attr in POSITIVE_FIELDS and value == 0:
            lib_logger.warning(f"Ignoring zero value for {key}: {raw!r}")
            continue
        setattr(config, attr, value)
        lib_logger.debug(f"Config override {key}={value!r}")

    verify_key = f"{ENV_PREFIX}VERIFY_TLS"
    if verify_key in source:
        config.verify_tls = env_bool(verify_key, config.verify_tls, env=source)

    strategy_key = f"{ENV_PREFIX}DETECT_STRATEGY"
    strategy = source.get(strategy_key, "").strip().lower()
    if strategy:
        if strategy in VALID_DETECT_STRATEGIES:
            config.detect_strategy = strategy
        else:
            lib_logger.warning(
                f"Ignoring unknown {strategy_key}={strategy!r}, "
                f"expected one of {', '.join(VALID_DETECT_STRATEGIES)}"
            )

    return config
