"""
Streaming Response Decoder
==========================

Turns the server-sent-event byte stream of an OpenAI-compatible
chat-completions call into text deltas plus fully assembled tool calls.

Handles:
- Frames split at arbitrary byte offsets (partial lines are buffered)
- Multi-byte characters split across chunks (incremental UTF-8 decode)
- True incremental argument deltas (concatenated)
- Backends that resend the whole argument buffer on every chunk
- Backends that batch several tool calls into one buffer as concatenated JSON

Pure transform: no I/O, no logging of payload content.
"""

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..structured_output import scan_top_level_objects

logger = logging.getLogger(__name__)

REPLACEMENT_CHAR = "\ufffd"


@dataclass
class ToolCall:
    """A complete tool invocation requested by the model"""
    id: str
    name: str
    arguments: str = "{}"

    @property
    def args(self) -> Dict[str, Any]:
        """Arguments as a dict ({} if they do not parse to an object)"""
        try:
            data = json.loads(self.arguments or "{}")
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}


@dataclass
class DecodedStream:
    """Final result of one streamed response"""
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


@dataclass
class _ToolCallBuffer:
    id: str = ""
    name: str = ""
    arguments: str = ""


# =============================================================================
# Concatenated JSON splitting
# =============================================================================

def split_concatenated_json(text: str) -> List[str]:
    """
    Split a buffer like '{"a":1}{"b":"x}y"}' into its outer objects.

    A buffer with no complete object is returned as-is (stripped), so the
    caller still sees the raw arguments.
    """
    objects, _ = scan_top_level_objects(text)
    if objects:
        return objects
    stripped = text.strip()
    return [stripped] if stripped else []


def _is_complete_json(text: str) -> bool:
    stripped = text.strip()
    if not stripped:
        return False
    try:
        json.loads(stripped)
        return True
    except json.JSONDecodeError:
        pass
    objects, remainder = scan_top_level_objects(stripped)
    if not objects or remainder:
        return False
    try:
        for obj in objects:
            json.loads(obj)
    except json.JSONDecodeError:
        return False
    return True


def merge_argument_fragment(buffer: str, fragment: str) -> str:
    """
    Merge one streamed arguments fragment into the accumulated buffer.

    True deltas are appended. Once the buffer already parses, a resend of the
    same (or a growing) buffer replaces it instead of duplicating it; only a
    new object is appended, which is how batched calls arrive.
    """
    if not buffer:
        return fragment
    if _is_complete_json(buffer):
        if fragment == buffer or buffer.startswith(fragment):
            return buffer
        if fragment.startswith(buffer):
            return fragment
        if fragment.lstrip().startswith("{"):
            return buffer + fragment
        return buffer
    if len(fragment) > len(buffer) and fragment.startswith(buffer):
        return fragment
    return buffer + fragment


def _merge_name(current: str, incoming: str) -> str:
    if not current or incoming.startswith(current):
        return incoming
    return current + incoming


# =============================================================================
# Decoder
# =============================================================================

class StreamDecoder:
    """
    Incremental SSE decoder.

    Usage:
        decoder = StreamDecoder()
        async for chunk in response.aiter_bytes():
            for delta in decoder.feed(chunk):
                ...
        result = decoder.finish()
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending_line = ""
        self._text_parts: List[str] = []
        self._buffers: Dict[int, _ToolCallBuffer] = {}
        self._flushed = False
        self.finish_reason: Optional[str] = None
        self.input_tokens = 0
        self.output_tokens = 0

    def feed(self, chunk: bytes) -> List[str]:
        """Consume raw bytes, return the text deltas completed by them"""
        return self._consume(self._utf8.decode(chunk), final=False)

    def flush(self) -> List[str]:
        """Flush buffered bytes and the last unterminated line"""
        if self._flushed:
            return []
        self._flushed = True
        return self._consume(self._utf8.decode(b"", final=True), final=True)

    def finish(self) -> DecodedStream:
        """Assemble the final text and tool calls"""
        self.flush()
        return DecodedStream(
            text="".join(self._text_parts),
            tool_calls=self._assemble_tool_calls(),
            finish_reason=self.finish_reason,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )

    def _consume(self, text: str, final: bool) -> List[str]:
        self._pending_line += text
        lines = self._pending_line.split("\n")
        self._pending_line = lines.pop()
        if final and self._pending_line:
            lines.append(self._pending_line)
            self._pending_line = ""

        deltas = []
        for line in lines:
            delta = self._handle_line(line.rstrip("\r"))
            if delta:
                self._text_parts.append(delta)
                deltas.append(delta)
        return deltas

    def _handle_line(self, line: str) -> Optional[str]:
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparseable stream frame (len={len(payload)})")
            return None
        if not isinstance(data, dict):
            return None
        return self._apply_frame(data)

    def _apply_frame(self, data: Dict[str, Any]) -> Optional[str]:
        usage = data.get("usage") or {}
        if usage:
            self.input_tokens = usage.get("prompt_tokens", self.input_tokens) or 0
            self.output_tokens = usage.get("completion_tokens", self.output_tokens) or 0

        choices = data.get("choices") or []
        if not choices:
            return None
        choice = choices[0]
        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]

        delta = choice.get("delta") or {}
        for position, call in enumerate(delta.get("tool_calls") or []):
            index = call.get("index", position)
            buffer = self._buffers.setdefault(index, _ToolCallBuffer())
            if call.get("id") and not buffer.id:
                buffer.id = call["id"]
            function = call.get("function") or {}
            if function.get("name"):
                buffer.name = _merge_name(buffer.name, function["name"])
            if function.get("arguments"):
                buffer.arguments = merge_argument_fragment(buffer.arguments, function["arguments"])

        content = delta.get("content")
        if not content:
            return None
        return content.replace(REPLACEMENT_CHAR, "")

    def _assemble_tool_calls(self) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for index in sorted(self._buffers):
            buffer = self._buffers[index]
            if not buffer.name:
                logger.warning(f"Dropping tool call #{index} without a name")
                continue
            parts = split_concatenated_json(buffer.arguments) or ["{}"]
            if len(parts) == 1:
                calls.append(ToolCall(id=buffer.id, name=buffer.name, arguments=parts[0]))
                continue
            logger.info(f"Splitting batched tool call '{buffer.name}' into {len(parts)} calls")
            for n, part in enumerate(parts):
                call_id = f"{buffer.id}_{n}" if buffer.id else ""
                calls.append(ToolCall(id=call_id, name=buffer.name, arguments=part))
        return calls


def decode_stream(chunks: Iterable[bytes]) -> DecodedStream:
    """Decode a complete sequence of byte chunks"""
    decoder = StreamDecoder()
    for chunk in chunks:
        decoder.feed(chunk)
    return decoder.finish()
