# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""HTTP transport for the local language server."""

from .http_client import HttpTransport

__all__ = ["HttpTransport"]
