# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .backoff import (
    compute_backoff_ms,
    extract_error_body,
    get_upstream_retry_delay_ms,
    parse_duration_to_ms,
    retry_on_rate_limit,
    try_parse_json,
    with_retry,
)

__all__ = [
    "with_retry",
    "retry_on_rate_limit",
    "compute_backoff_ms",
    "get_upstream_retry_delay_ms",
    "extract_error_body",
    "parse_duration_to_ms",
    "try_parse_json",
]
