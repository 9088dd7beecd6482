"""
Backend Base Client
===================

Shared async HTTP plumbing for the gateway, citations and law-search clients:
lazy httpx.AsyncClient, retry with exponential backoff on transient errors,
cancellation of the in-flight request.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from ..cancellation import run_cancellable
from ..errors import BackendError, TransientBackendError, TRANSIENT_STATUS_CODES

logger = logging.getLogger(__name__)


class BackendHTTPClient:
    """
    Base async client.

    Subclasses set `base_url` and override `_headers()`.
    """

    service_name = "backend"

    def __init__(
        self,
        base_url: str,
        timeout: float = 120,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close the HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def retry_delay(self, attempt: int) -> float:
        return self.retry_base_delay * (2 ** attempt)

    async def _send(
        self,
        path: str,
        payload: Dict[str, Any],
        stream: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> httpx.Response:
        """POST with retry on transient errors. Returns an open response (status < 400)."""
        client = await self._get_client()
        last_error: Optional[TransientBackendError] = None

        for attempt in range(self.max_retries):
            request = client.build_request("POST", f"{self.base_url}{path}", json=payload, headers=self._headers())
            try:
                response = await run_cancellable(client.send(request, stream=stream), cancel)
            except httpx.TransportError as e:
                last_error = TransientBackendError(f"Network error: {e}")
            else:
                if response.status_code < 400:
                    return response
                body = (await response.aread()).decode("utf-8", errors="replace")[:200]
                await response.aclose()
                if response.status_code not in TRANSIENT_STATUS_CODES:
                    raise BackendError(f"HTTP {response.status_code}: {body}", response.status_code)
                last_error = TransientBackendError(f"HTTP {response.status_code}: {body}", response.status_code)

            if attempt < self.max_retries - 1:
                delay = self.retry_delay(attempt)
                logger.warning(
                    f"{self.service_name} transient error ({last_error}), retry {attempt + 1} in {delay:.1f}s"
                )
                await run_cancellable(asyncio.sleep(delay), cancel)

        logger.error(f"{self.service_name} request failed after {self.max_retries} attempts: {last_error}")
        raise last_error

    async def _post_json(
        self,
        path: str,
        payload: Dict[str, Any],
        cancel: Optional[asyncio.Event] = None,
    ) -> Any:
        response = await self._send(path, payload, cancel=cancel)
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"{self.service_name} returned non-JSON body: {e}")
