# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Language server process detection.

Public API:
    ProcessDetector: Finds the server and extracts port + CSRF token
    get_platform_strategy: Picks the listing strategy for the OS
"""

from .detector import ProcessDetector, run_shell_command
from .platforms import (
    PlatformStrategy,
    ProcStrategy,
    PsStrategy,
    get_platform_strategy,
    is_language_server_process,
    is_platform_supported,
    parse_listening_ports,
)

__all__ = [
    "ProcessDetector",
    "run_shell_command",
    "PlatformStrategy",
    "PsStrategy",
    "ProcStrategy",
    "get_platform_strategy",
    "is_platform_supported",
    "is_language_server_process",
    "parse_listening_ports",
]
