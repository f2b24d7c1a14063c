"""
HTTP transport wrapper

Sends a WireRequest with httpx and returns the typed Exchange
(request, response) pair that the payload store records. Transport errors
become a response with no status and an error string, never an exception.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from .payload_store import WireRequest, WireResponse

logger = logging.getLogger(__name__)


@dataclass
class Exchange:
    request: WireRequest
    response: WireResponse

    @property
    def error(self) -> Optional[str]:
        return self.response.error

    @property
    def duration_ms(self) -> Optional[float]:
        return self.response.duration_ms


class HttpTransport:
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def send(self, request: WireRequest, timeout: float) -> Exchange:
        start = time.perf_counter()
        try:
            r = await self.client.request(
                request.method,
                request.url,
                headers=dict(request.headers),
                content=request.body,
                timeout=timeout,
            )
            response = WireResponse(
                status=r.status_code,
                headers=dict(r.headers),
                body=r.content,
                duration_ms=(time.perf_counter() - start) * 1000,
            )
        except httpx.TimeoutException as e:
            response = WireResponse(
                error=f"timeout after {timeout:.1f}s: {type(e).__name__}",
                duration_ms=(time.perf_counter() - start) * 1000,
            )
        except httpx.HTTPError as e:
            response = WireResponse(
                error=f"{type(e).__name__}: {e}",
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        logger.debug(
            f"{request.method} {request.url} -> {response.status or response.error} "
            f"({response.duration_ms:.0f}ms)"
        )
        return Exchange(request=request, response=response)

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
