# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
HTTP transport for talking to the local language server.

The language server serves its Connect RPC API over HTTPS with a self-signed
certificate on some ports and over plain HTTP on others. HttpTransport tries
the preferred scheme first and, when fallback is allowed, the other one; the
scheme that worked is remembered per host:port so later calls go straight to
it.
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..core.errors import TransportError
from ..core.types import ConnectionProtocol, HttpResponse

lib_logger = logging.getLogger("quota_monitor")


class HttpTransport:
    """
    httpx-based implementation of the Transport protocol.

    Usage:
        transport = HttpTransport()
        response = await transport.request("127.0.0.1", 42100, "/path", body={...})
        await transport.aclose()
    """

    def __init__(
        self,
        verify: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the transport.

        Args:
            verify: Verify TLS certificates (the language server's is self-signed)
            client: Pre-built client, e.g. one with a MockTransport in tests.
                    A client passed in is not closed by aclose().
        """
        self._verify = verify
        self._client = client
        self._owns_client = client is None
        self._protocol_cache: Dict[str, ConnectionProtocol] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(verify=self._verify)
        return self._client

    def cached_protocol(self, hostname: str, port: int) -> Optional[ConnectionProtocol]:
        """Scheme that last worked for host:port, if any."""
        return self._protocol_cache.get(f"{hostname}:{port}")

    def clear_protocol_cache(self) -> None:
        """Forget which scheme each port answered on."""
        self._protocol_cache.clear()

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
        """
        Send a request, falling back to the alternate scheme on failure.

        Args:
            hostname: Host to connect to (loopback)
            port: Port to connect to
            path: Request path
            method: HTTP method
            headers: Extra headers; Content-Type defaults to JSON
            body: str/bytes sent as-is, anything else JSON-encoded
            timeout: Seconds before each attempt times out
            allow_fallback: Try the alternate scheme if the first one fails

        Returns:
            HttpResponse with the decoded body and the scheme that answered

        Raises:
            TransportError: If every scheme failed at the network level
        """
        key = f"{hostname}:{port}"
        preferred = self._protocol_cache.get(key, ConnectionProtocol.HTTPS)
        protocols = [preferred, preferred.alternate] if allow_fallback else [preferred]

        request_headers = {"Content-Type": "application/json"}
        if headers:
            request_headers.update(headers)

        if body is None or isinstance(body, (str, bytes)):
            content = body
        else:
            content = json.dumps(body)

        client = self._get_client()
        last_error: Optional[Exception] = None

        for protocol in protocols:
            url = f"{protocol.value}://{hostname}:{port}{path}"
            try:
                response = await client.request(
                    method,
                    url,
                    headers=request_headers,
                    content=content,
                    timeout=timeout,
                )
            except httpx.TransportError as e:
                last_error = e
                lib_logger.debug(f"{protocol.value.upper()} request to {key} failed: {e!r}")
                continue

            if protocol is not preferred:
                lib_logger.debug(f"{key} answered over {protocol.value}, caching")
            self._protocol_cache[key] = protocol
            return HttpResponse(
                status_code=response.status_code,
                data=_decode_body(response),
                protocol=protocol,
            )

        self._protocol_cache.pop(key, None)
        raise TransportError(
            f"Request to {key}{path} failed: {last_error or 'no protocol attempted'}",
            cause=last_error,
        )

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _decode_body(response: httpx.Response) -> Any:
    """JSON body if it parses, otherwise the raw text (None if empty)."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
