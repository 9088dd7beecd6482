"""
Gateway Client
==============

Async client for an OpenAI-compatible chat-completions gateway.
Used by the reasoning loop (streaming + tools), the strategy JSON phase,
quality review and embeddings for vector law search.

- Transient failures (429, 5xx, network) are retried with exponential backoff
- Non-streaming calls report truncation (finish_reason == "length")
- Every call accepts a cancel event that aborts the in-flight request
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..cancellation import run_cancellable
from ..config import Settings, get_settings
from ..errors import BackendError, TransientBackendError
from .base import BackendHTTPClient
from .stream_decoder import DecodedStream, StreamDecoder

logger = logging.getLogger(__name__)


@dataclass
class LLMCallResult:
    """Result from a non-streaming LLM call"""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: Optional[str] = None
    raw_response: Optional[Dict] = None
    success: bool = True
    error: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


@dataclass
class UsageTotals:
    """Token usage accumulated over a run"""
    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens or 0
        self.output_tokens += output_tokens or 0
        self.calls += 1

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "calls": self.calls,
        }


def sanitize_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop empty content from assistant turns that only carry tool calls"""
    cleaned = []
    for message in messages:
        if message.get("role") == "assistant" and message.get("tool_calls") and not message.get("content"):
            message = {k: v for k, v in message.items() if k != "content"}
        cleaned.append(message)
    return cleaned


class GatewayClient(BackendHTTPClient):
    """
    Async client for the chat-completions gateway.

    Usage:
        gateway = GatewayClient(api_key=..., model=...)
        result = await gateway.call(messages, max_tokens=4096)
        decoded = await gateway.stream_chat(messages, tools=tool_specs)
    """

    service_name = "Gateway"

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        embedding_model: Optional[str] = None,
        timeout: float = 120,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        app_name: str = "Brief Engine",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, max_retries, retry_base_delay, transport)
        self.api_key = api_key
        self.model = model
        self.embedding_model = embedding_model
        self.app_name = app_name

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, model: Optional[str] = None) -> "GatewayClient":
        settings = settings or get_settings()
        return cls(
            api_key=settings.gateway_api_key,
            model=model or settings.reasoning_model,
            base_url=settings.gateway_base_url,
            embedding_model=settings.embedding_model,
            timeout=settings.llm_timeout,
            max_retries=settings.llm_max_retries,
            retry_base_delay=settings.llm_retry_base_delay,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": self.app_name,
        }

    async def _send(self, path, payload, stream=False, cancel=None) -> httpx.Response:
        if not self.api_key:
            raise BackendError("Gateway API key not configured")
        return await super()._send(path, payload, stream=stream, cancel=cancel)

    async def call(
        self,
        messages: List[Dict[str, Any]],
        response_format: Optional[Dict] = None,
        temperature: float = 0,
        max_tokens: int = 4096,
        model: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> LLMCallResult:
        """
        Make a non-streaming completion call.

        Args:
            messages: List of message dicts with role and content
            response_format: Optional format spec (e.g., {"type": "json_object"})
            temperature: Sampling temperature (0 = deterministic)
            max_tokens: Maximum response tokens
            model: Override the client's model
            cancel: Optional cancel event

        Returns:
            LLMCallResult with content or error. Cancellation raises PipelineCancelled.
        """
        model = model or self.model
        payload: Dict[str, Any] = {
            "model": model,
            "messages": sanitize_messages(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format

        try:
            data = await self._post_json("/chat/completions", payload, cancel=cancel)
        except BackendError as e:
            return LLMCallResult(content="", model=model, success=False, error=str(e))

        try:
            choice = data["choices"][0]
            content = choice["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.error(f"Gateway response missing content: {e}")
            return LLMCallResult(
                content="",
                model=model,
                success=False,
                error=f"Response missing content: {e}",
                raw_response=data,
            )

        usage = data.get("usage") or {}
        return LLMCallResult(
            content=content,
            model=model,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            finish_reason=choice.get("finish_reason"),
            raw_response=data,
        )

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 16384,
        temperature: float = 0,
        model: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
        on_text: Optional[Callable[[str], None]] = None,
    ) -> DecodedStream:
        """
        Streaming call with optional tools.

        Text deltas are passed to `on_text` as they arrive. Raises BackendError
        (TransientBackendError once retries are exhausted).
        """
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": sanitize_messages(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = tools

        response = await self._send("/chat/completions", payload, stream=True, cancel=cancel)
        decoder = StreamDecoder()

        async def _read() -> None:
            async for chunk in response.aiter_bytes():
                for delta in decoder.feed(chunk):
                    if on_text:
                        on_text(delta)

        try:
            await run_cancellable(_read(), cancel)
        except httpx.TransportError as e:
            raise TransientBackendError(f"Stream interrupted: {e}")
        finally:
            await response.aclose()

        for delta in decoder.flush():
            if on_text:
                on_text(delta)
        return decoder.finish()

    async def embed(self, text: str, cancel: Optional[asyncio.Event] = None) -> List[float]:
        """Embedding vector for one text"""
        if not self.embedding_model:
            raise BackendError("Embedding model not configured")
        data = await self._post_json(
            "/embeddings",
            {"model": self.embedding_model, "input": text},
            cancel=cancel,
        )
        try:
            return data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Embedding response malformed: {e}")


# Singleton
_gateway: Optional[GatewayClient] = None


def get_gateway() -> GatewayClient:
    """Get singleton gateway client"""
    global _gateway
    if _gateway is None:
        _gateway = GatewayClient.from_settings()
    return _gateway
