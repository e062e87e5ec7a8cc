# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Collaborator boundaries of the quota monitor.

Transport and CommandRunner are consumed by this package (HttpTransport and
run_shell_command are the default implementations). AccountSelector and
FormatConverter belong to the hosting proxy application; they are declared
here so hosts can type their implementations against the snapshots this
package produces, but no implementation is provided.
"""

from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from .types import HttpResponse, QuotaSnapshot


class Transport(Protocol):
    """HTTP collaborator used by the detector and the connection manager."""

    async def request(
        self,
        hostname: str,
        port: int,
        path: str,
        method: str = "POST",
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[Any] = None,
        timeout: float = 5.0,
        allow_fallback: bool = True,
    ) -> HttpResponse:
        """Perform a request, raising TransportError on network failure."""
        ...


class CommandRunner(Protocol):
    """Runs a shell command and returns (exit code, stdout, stderr)."""

    async def __call__(self, command: str, timeout: float) -> Tuple[int, str, str]:
        ...


class AccountSelector(Protocol):
    """Chooses which account to route a request through."""

    def select_account(self, snapshots: Mapping[str, QuotaSnapshot]) -> Optional[str]:
        ...


class FormatConverter(Protocol):
    """Converts between an LLM provider wire format and the server's format."""

    def convert_request(self, payload: Dict[str, Any], formats: Sequence[str]) -> Dict[str, Any]:
        ...

    def convert_response(self, payload: Dict[str, Any], formats: Sequence[str]) -> Dict[str, Any]:
        ...
