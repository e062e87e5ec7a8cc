# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Platform strategy router.

Routes to the process listing strategy for the current OS. Windows has no
strategy of its own yet: it gets the ps strategy with a warning, the same as
any unknown platform, so detection degrades to "not found" instead of
failing.
"""

import logging
import sys
from typing import Optional

from .base import PlatformStrategy, parse_listening_ports
from .unix import ProcStrategy, PsStrategy, is_language_server_process

lib_logger = logging.getLogger("quota_monitor")

SUPPORTED_PLATFORMS = ("linux", "darwin")


def get_platform_strategy(
    platform: Optional[str] = None,
    preferred: Optional[str] = None,
) -> PlatformStrategy:
    """
    Get the process listing strategy for a platform.

    Args:
        platform: sys.platform-style name; defaults to the running platform
        preferred: "ps" or "proc" to force a strategy (proc is Linux only)

    Returns:
        The strategy to use; never raises for unknown platforms
    """
    platform = platform or sys.platform

    if preferred == "proc":
        if platform.startswith("linux"):
            return ProcStrategy()
        lib_logger.warning(
            f"[Platform] proc strategy needs Linux, using ps strategy on {platform}"
        )
        return PsStrategy()

    if platform.startswith("linux") or platform == "darwin":
        # macOS ps accepts the same flags
        return PsStrategy()
    if platform == "win32":
        lib_logger.warning(
            "[Platform] Windows support not yet implemented, falling back to ps strategy"
        )
        return PsStrategy()

    lib_logger.warning(f"[Platform] Unknown platform {platform}, falling back to ps strategy")
    return PsStrategy()


def is_platform_supported(platform: Optional[str] = None) -> bool:
    """Check if the platform has a native detection strategy."""
    platform = platform or sys.platform
    return platform.startswith("linux") or platform in SUPPORTED_PLATFORMS


__all__ = [
    "PlatformStrategy",
    "PsStrategy",
    "ProcStrategy",
    "get_platform_strategy",
    "is_platform_supported",
    "is_language_server_process",
    "parse_listening_ports",
]
