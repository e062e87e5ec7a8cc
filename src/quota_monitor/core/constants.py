# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Constants and default values for the quota monitor.

Tunable defaults (overridable through MonitorConfig / environment) live in
the first half of this module; fixed wire-level constants of the language
server protocol live in the second half.
"""

# =============================================================================
# TUNABLE DEFAULTS
# =============================================================================

# Connection lifecycle (seconds)
DEFAULT_POLLING_INTERVAL = 90.0
DEFAULT_RECONNECT_BACKOFF = 60.0  # No rediscovery this soon after a failed connect
DEFAULT_REQUEST_TIMEOUT = 5.0
DEFAULT_PROBE_TIMEOUT = 2.0

# Process detection
DEFAULT_DETECT_ATTEMPTS = 3
DEFAULT_CONNECT_DETECT_ATTEMPTS = 2
DEFAULT_DETECT_BASE_DELAY = 1.5  # seconds, grows by DETECT_DELAY_GROWTH per attempt
DETECT_DELAY_GROWTH = 1.5
DEFAULT_COMMAND_TIMEOUT = 10.0
QUICK_CHECK_TIMEOUT = 5.0
PORT_LIST_TIMEOUT = 3.0

# Telemetry request metadata
DEFAULT_IDE_NAME = "antigravity"
DEFAULT_EXTENSION_NAME = "antigravity"
DEFAULT_LOCALE = "en"

# Retry engine (milliseconds)
DEFAULT_MAX_RETRIES = 3
RETRY_BASE_DELAY_MS = 500
RETRY_MAX_DELAY_MS = 20_000
RETRY_MIN_DELAY_MS = 500
RETRY_JITTER_RATIO = 0.2  # +-20%
RETRY_HINT_BUFFER_MS = 50
CAPACITY_EXHAUSTED_FLOOR_MS = 1000
CAPACITY_EXHAUSTED_REASON = "MODEL_CAPACITY_EXHAUSTED"
RATE_LIMIT_STATUS = 429

# =============================================================================
# LANGUAGE SERVER WIRE CONSTANTS
# =============================================================================

DEFAULT_HOST = "127.0.0.1"
USER_STATUS_PATH = "/exa.language_server_pb.LanguageServerService/GetUserStatus"
PROTOCOL_VERSION_HEADER = "Connect-Protocol-Version"
CSRF_TOKEN_HEADER = "X-Codeium-Csrf-Token"

# Extension port range accepted from process command lines
MIN_EXTENSION_PORT = 1000
MAX_EXTENSION_PORT = 65535
CMDLINE_MAX_LENGTH = 200  # cmdline kept on ProcessRecord for diagnostics only

# Status messages
MSG_SERVER_NOT_FOUND = "Language server not found"
MSG_MANUAL_DISCONNECT = "Manual disconnect"

# Environment variable prefix for configuration overrides
ENV_PREFIX = "QUOTA_MONITOR_"
