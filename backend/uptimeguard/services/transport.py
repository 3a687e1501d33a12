"""Outbound transport used by probes and notification channels."""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

from ..errors import ProbeTimeoutError, TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "UptimeGuard/1.0"


@dataclass
class FetchResponse:
    """Normalized HTTP response."""
    status: int
    headers: dict = field(default_factory=dict)
    body: str = ""


class Transport:
    """HTTP fetch and raw TCP connect primitives, each bounded by a timeout.

    Timeouts surface as ``ProbeTimeoutError`` and every other network failure
    as ``TransportError`` so callers only deal with the core taxonomy.

    Without an injected client one shared client is kept per TLS verification
    mode. An injected client owns its TLS settings and serves every request,
    so ``verify`` has no effect on it.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._injected = client
        self._clients: Dict[bool, httpx.AsyncClient] = {}

    def client_for(self, verify: bool = True) -> httpx.AsyncClient:
        if self._injected is not None:
            return self._injected
        client = self._clients.get(verify)
        if client is None:
            client = self._clients[verify] = httpx.AsyncClient(verify=verify)
        return client

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict] = None,
        body: Optional[str] = None,
        timeout: float = 30,
        follow_redirects: bool = True,
        verify: bool = True,
        read_body: bool = True,
    ) -> FetchResponse:
        request_headers = {"User-Agent": USER_AGENT}
        request_headers.update(headers or {})

        async def _send(client: httpx.AsyncClient) -> FetchResponse:
            response = await client.request(
                method,
                url,
                headers=request_headers,
                content=body,
                follow_redirects=follow_redirects,
                timeout=timeout,
            )
            return FetchResponse(
                status=response.status_code,
                headers=dict(response.headers),
                body=response.text if read_body else "",
            )

        try:
            # Bound the whole call, not just the individual socket operations
            return await asyncio.wait_for(_send(self.client_for(verify)), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ProbeTimeoutError(timeout) from e
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def post_json(self, url: str, payload: dict, headers: Optional[dict] = None, timeout: float = 10) -> FetchResponse:
        """POST a JSON document, used by notification channels."""
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        return await self.fetch(
            url,
            method="POST",
            headers=request_headers,
            body=json.dumps(payload),
            timeout=timeout,
        )

    async def connect(self, host: str, port: int, timeout: float = 30) -> bool:
        """Open a TCP connection and close it straight away."""
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProbeTimeoutError(timeout, f"Connection timeout after {timeout:g}s") from e
        except (OSError, OverflowError, ValueError) as e:
            # OverflowError: port outside 0-65535
            raise TransportError(str(e) or type(e).__name__) from e

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            logger.debug(f"Error while closing probe connection to {host}:{port}")
        return True

    async def aclose(self):
        if self._injected is not None:
            await self._injected.aclose()
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
