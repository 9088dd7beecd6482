"""
Tool-Loop Agent Runtime
=======================

Drives a bounded conversation with a reasoning backend:
send context -> decode streamed response -> execute requested tools ->
feed results back -> repeat.

Termination:
- FINALIZED: the terminal tool was invoked successfully
- COMPLETED: the model answered without requesting any tool
- FORCED: round/time budget exhausted; a "finalize now" turn was appended
  and one last call (terminal tool only) was made
- CANCELLED: the caller's cancel event fired

Tool dispatch goes through a closed ToolName enum. Unknown names, argument
errors, call caps and handler exceptions all come back to the model as error
tool results so it can correct itself.
"""

import asyncio
import json
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Union

from .errors import PipelineCancelled, ToolExecutionError
from .llm.gateway import UsageTotals
from .llm.stream_decoder import DecodedStream, ToolCall

logger = logging.getLogger(__name__)


SOFT_TIMEOUT_NUDGE = (
    "Time is almost up. Stop searching and call {tool} now with the analysis "
    "you already have."
)

FINALIZE_NOW = (
    "The research budget is exhausted. Do not call any other tool. "
    "Call {tool} immediately with your reasoning summary so far."
)


class ToolName(str, Enum):
    """Every tool the reasoning loop can call"""
    SEARCH_LAW = "search_law"
    READ_FILE = "read_file"
    FINALIZE_STRATEGY = "finalize_strategy"


class TerminationReason(str, Enum):
    FINALIZED = "finalized"
    COMPLETED = "completed"
    FORCED = "forced"
    CANCELLED = "cancelled"


@dataclass
class ToolResult:
    """Text fed back to the model plus whether the call succeeded"""
    result_text: str
    success: bool = True


ToolHandler = Callable[[Dict[str, Any]], Awaitable[ToolResult]]


@dataclass
class Tool:
    """A registered tool: name, JSON-schema parameters, handler, optional call cap"""
    name: ToolName
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler
    max_calls: Optional[int] = None

    def spec(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class UnknownTool:
    """Resolution result for a name that is not a registered tool"""
    name: str


class ToolRegistry:
    """Closed set of tools for one loop; counts calls per tool"""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: Dict[ToolName, Tool] = {}
        self._calls: Counter = Counter()
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name.value}")
        self._tools[tool.name] = tool

    @property
    def names(self) -> List[str]:
        return [name.value for name in self._tools]

    def resolve(self, name: str) -> Union[Tool, UnknownTool]:
        try:
            key = ToolName(name)
        except ValueError:
            return UnknownTool(name)
        return self._tools.get(key) or UnknownTool(name)

    def specs(self, only: Optional[Iterable[ToolName]] = None) -> List[Dict[str, Any]]:
        allowed = set(only) if only is not None else None
        return [t.spec() for t in self._tools.values() if allowed is None or t.name in allowed]

    def call_count(self, name: ToolName) -> int:
        return self._calls[name]

    async def execute(self, call: ToolCall) -> ToolResult:
        """Run one tool call. Never raises except for cancellation."""
        target = self.resolve(call.name)
        if isinstance(target, UnknownTool):
            logger.warning(f"Model requested unknown tool '{target.name}'")
            return ToolResult(
                f"Unknown tool '{target.name}'. Available tools: {', '.join(self.names)}",
                success=False,
            )

        try:
            args = json.loads(call.arguments or "{}")
        except json.JSONDecodeError as e:
            return ToolResult(f"Arguments for {call.name} are not valid JSON: {e}", success=False)
        if not isinstance(args, dict):
            return ToolResult(f"Arguments for {call.name} must be a JSON object", success=False)

        if target.max_calls is not None and self._calls[target.name] >= target.max_calls:
            logger.info(f"Tool {call.name} hit its cap ({target.max_calls})")
            return ToolResult(
                f"Call limit reached for {call.name} ({target.max_calls}). "
                f"Continue with the information you already have.",
                success=False,
            )

        self._calls[target.name] += 1
        try:
            return await target.handler(args)
        except (PipelineCancelled, asyncio.CancelledError):
            raise
        except ToolExecutionError as e:
            return ToolResult(f"{call.name} failed: {e}", success=False)
        except Exception as e:
            logger.error(f"Tool {call.name} raised {type(e).__name__}: {e}")
            return ToolResult(f"{call.name} failed: {e}", success=False)


class ReasoningBackend(Protocol):
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
        ...


@dataclass
class LoopLimits:
    """Hard budgets for one loop"""
    max_rounds: int = 6
    timeout: Optional[float] = None
    soft_timeout: Optional[float] = None
    max_tokens: int = 16384


@dataclass
class ToolLoopResult:
    final_text: str
    rounds: int
    termination: TerminationReason
    terminal_args: Optional[Dict[str, Any]] = None
    messages: List[Dict[str, Any]] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: UsageTotals = field(default_factory=UsageTotals)

    @property
    def finalized(self) -> bool:
        return self.terminal_args is not None


def _assistant_turn(text: str, calls: List[ToolCall]) -> Dict[str, Any]:
    turn: Dict[str, Any] = {"role": "assistant", "content": text}
    if calls:
        turn["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in calls
        ]
    return turn


def _with_ids(calls: List[ToolCall], round_no: int) -> List[ToolCall]:
    for i, call in enumerate(calls):
        if not call.id:
            call.id = f"call_{round_no}_{i}"
    return calls


async def run_tool_loop(
    backend: ReasoningBackend,
    system_prompt: str,
    messages: List[Dict[str, Any]],
    registry: ToolRegistry,
    terminal_tool: ToolName,
    limits: Optional[LoopLimits] = None,
    cancel: Optional[asyncio.Event] = None,
    on_text: Optional[Callable[[str], None]] = None,
    on_tool_result: Optional[Callable[[ToolCall, ToolResult], None]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> ToolLoopResult:
    """
    Run the loop until the terminal tool, a tool-free answer, budget
    exhaustion or cancellation.

    Backend errors other than cancellation propagate to the caller.
    """
    limits = limits or LoopLimits()
    conversation: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}, *messages]
    result = ToolLoopResult(final_text="", rounds=0, termination=TerminationReason.COMPLETED, messages=conversation)
    started = clock()
    nudged = False

    async def _execute(calls: List[ToolCall]) -> Optional[Dict[str, Any]]:
        terminal_args = None
        for call in calls:
            tool_result = await registry.execute(call)
            result.tool_calls.append(call)
            if on_tool_result:
                on_tool_result(call, tool_result)
            conversation.append({"role": "tool", "tool_call_id": call.id, "content": tool_result.result_text})
            if call.name == terminal_tool.value and tool_result.success and terminal_args is None:
                terminal_args = call.args
        return terminal_args

    try:
        while result.rounds < limits.max_rounds:
            elapsed = clock() - started
            if limits.timeout is not None and elapsed >= limits.timeout:
                logger.warning(f"Tool loop hit wall-clock limit after {elapsed:.1f}s")
                break
            if limits.soft_timeout is not None and not nudged and elapsed >= limits.soft_timeout:
                conversation.append({"role": "user", "content": SOFT_TIMEOUT_NUDGE.format(tool=terminal_tool.value)})
                nudged = True
                logger.info(f"Soft timeout reached ({elapsed:.1f}s), nudging toward {terminal_tool.value}")

            result.rounds += 1
            decoded = await backend.stream_chat(
                conversation,
                tools=registry.specs(),
                max_tokens=limits.max_tokens,
                cancel=cancel,
                on_text=on_text,
            )
            result.usage.add(decoded.input_tokens, decoded.output_tokens)
            result.final_text = decoded.text
            calls = _with_ids(decoded.tool_calls, result.rounds)
            conversation.append(_assistant_turn(decoded.text, calls))

            if not calls:
                logger.info(f"Tool loop completed without terminal tool after {result.rounds} rounds")
                result.termination = TerminationReason.COMPLETED
                return result

            terminal_args = await _execute(calls)
            if terminal_args is not None:
                logger.info(f"Tool loop finalized after {result.rounds} rounds")
                result.termination = TerminationReason.FINALIZED
                result.terminal_args = terminal_args
                return result

        # Budget exhausted: one forced call restricted to the terminal tool
        logger.warning(f"Tool loop budget exhausted after {result.rounds} rounds, forcing {terminal_tool.value}")
        conversation.append({"role": "user", "content": FINALIZE_NOW.format(tool=terminal_tool.value)})
        decoded = await backend.stream_chat(
            conversation,
            tools=registry.specs(only=[terminal_tool]),
            max_tokens=limits.max_tokens,
            cancel=cancel,
            on_text=on_text,
        )
        result.usage.add(decoded.input_tokens, decoded.output_tokens)
        if decoded.text:
            result.final_text = decoded.text
        calls = [c for c in _with_ids(decoded.tool_calls, result.rounds + 1) if c.name == terminal_tool.value]
        conversation.append(_assistant_turn(decoded.text, calls))
        result.terminal_args = await _execute(calls)
        result.termination = TerminationReason.FORCED
        return result

    except PipelineCancelled:
        logger.info(f"Tool loop cancelled in round {result.rounds}")
        result.termination = TerminationReason.CANCELLED
        return result
