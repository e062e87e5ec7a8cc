# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .parser import UNKNOWN_RESET, format_time_until_reset, parse_timestamp, parse_user_status

__all__ = [
    "parse_user_status",
    "format_time_until_reset",
    "parse_timestamp",
    "UNKNOWN_RESET",
]
