"""
LLM Module
==========

Backend clients and the streaming decoder.

Architecture:
- Gateway (OpenAI-compatible): reasoning tool loop, strategy JSON, review, embeddings
- Citations backend: section drafting with span-level citations

Usage:
    from brief_engine.llm import get_gateway, get_citations_client

    gateway = get_gateway()
    decoded = await gateway.stream_chat(messages, tools=registry.specs())
"""

from .base import BackendHTTPClient
from .citations_client import CitationsClient, CitationsResponse, get_citations_client
from .gateway import GatewayClient, LLMCallResult, UsageTotals, get_gateway, sanitize_messages
from .stream_decoder import (
    DecodedStream,
    StreamDecoder,
    ToolCall,
    decode_stream,
    merge_argument_fragment,
    split_concatenated_json,
)

__all__ = [
    # Base
    "BackendHTTPClient",
    # Gateway
    "GatewayClient",
    "LLMCallResult",
    "UsageTotals",
    "get_gateway",
    "sanitize_messages",
    # Citations
    "CitationsClient",
    "CitationsResponse",
    "get_citations_client",
    # Streaming
    "DecodedStream",
    "StreamDecoder",
    "ToolCall",
    "decode_stream",
    "merge_argument_fragment",
    "split_concatenated_json",
]
