"""
HTTP transport used by virtual users.

The engine only depends on the Transport protocol: an awaitable
send_request() that never raises for network trouble and instead reports
status 0. HttpxTransport is the default implementation, sharing one
httpx.AsyncClient (and its connection pool) across all VUs of a run.
"""

from __future__ import annotations

import logging
import time
from typing import Mapping, Optional, Protocol

import httpx

from surge.models import NETWORK_FAILURE_STATUS, RequestOutcome

logger = logging.getLogger(__name__)

# Bodies are only inspected for short error messages.
DEFAULT_BODY_LIMIT = 4096


class Transport(Protocol):
    """Sends one request and reports what happened."""

    async def send_request(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> RequestOutcome:
        ...


class HttpxTransport:
    """
    Transport backed by a shared httpx.AsyncClient.

    Timeouts, refused connections, protocol errors, malformed URLs and
    unencodable bodies become RequestOutcome(status=0, error=...).
    Cancellation propagates.

    Usage:
        async with HttpxTransport(timeout=10.0) as transport:
            outcome = await transport.send_request("GET", "http://localhost:8081/health")
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_connections: Optional[int] = None,
        body_limit: int = DEFAULT_BODY_LIMIT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._body_limit = body_limit
        self._owns_client = client is None
        if client is None:
            limits = httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            )
            client = httpx.AsyncClient(timeout=timeout, limits=limits)
        self._client = client

    async def send_request(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> RequestOutcome:
        started = time.perf_counter()
        try:
            response = await self._client.request(
                method,
                url,
                content=body.encode("utf-8") if body is not None else None,
                headers=dict(headers or {}),
            )
        # InvalidURL is not an HTTPError; a lone surrogate in the body fails to encode.
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeEncodeError) as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.debug("Transport failure %s %s: %s", method, url, exc)
            return RequestOutcome(
                status=NETWORK_FAILURE_STATUS,
                latency_ms=elapsed_ms,
                error=f"{exc.__class__.__name__}: {exc}",
            )
        elapsed_ms = (time.perf_counter() - started) * 1000
        return RequestOutcome(
            status=response.status_code,
            body=response.text[: self._body_limit],
            latency_ms=elapsed_ms,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
