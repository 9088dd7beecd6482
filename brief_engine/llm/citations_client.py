"""
Citations Client
================

Client for a citation-capable messages API. Source documents are sent as
custom-content document blocks (one text block per chunk) with citations
enabled; the response interleaves text blocks with the citations anchored in
them.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..config import Settings, get_settings
from ..errors import BackendError
from .base import BackendHTTPClient

logger = logging.getLogger(__name__)


@dataclass
class CitationsResponse:
    """Raw content blocks plus usage from one citations call"""
    content_blocks: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


class CitationsClient(BackendHTTPClient):
    """Async client for the citations backend"""

    service_name = "Citations"

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: str = "https://api.anthropic.com/v1",
        api_version: str = "2023-06-01",
        timeout: float = 120,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, max_retries, retry_base_delay, transport)
        self.api_key = api_key
        self.model = model
        self.api_version = api_version

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CitationsClient":
        settings = settings or get_settings()
        return cls(
            api_key=settings.citations_api_key,
            model=settings.citations_model,
            base_url=settings.citations_base_url,
            api_version=settings.citations_api_version,
            timeout=settings.llm_timeout,
            max_retries=settings.llm_max_retries,
            retry_base_delay=settings.llm_retry_base_delay,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    async def create(
        self,
        documents: List[Dict[str, Any]],
        instruction: str,
        system: Optional[str] = None,
        max_tokens: int = 8192,
        cancel: Optional[asyncio.Event] = None,
    ) -> CitationsResponse:
        """
        Generate text grounded in `documents`.

        Args:
            documents: Document blocks built by grounding.build_document_blocks
            instruction: Writing instruction appended after the documents
            system: Optional system prompt
            max_tokens: Maximum response tokens
            cancel: Optional cancel event
        """
        if not self.api_key:
            raise BackendError("Citations API key not configured")

        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [*documents, {"type": "text", "text": instruction}],
                }
            ],
        }
        if system:
            payload["system"] = system

        data = await self._post_json("/messages", payload, cancel=cancel)
        if not isinstance(data, dict) or not isinstance(data.get("content"), list):
            raise BackendError("Citations response missing content blocks")

        usage = data.get("usage") or {}
        response = CitationsResponse(
            content_blocks=data["content"],
            stop_reason=data.get("stop_reason"),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        )
        if response.truncated:
            logger.warning(f"Citations output hit max_tokens ({max_tokens})")
        return response


# Singleton
_citations_client: Optional[CitationsClient] = None


def get_citations_client() -> CitationsClient:
    """Get singleton citations client"""
    global _citations_client
    if _citations_client is None:
        _citations_client = CitationsClient.from_settings()
    return _citations_client
