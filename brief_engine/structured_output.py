"""
Structured Output Parsing
=========================

Tiered fallback chain for getting one JSON object out of model text:

1. parse_strict           - json.loads on the stripped text
2. parse_after_cleanup    - markdown fences and trailing commas removed
3. extract_balanced_object - balanced-brace scan (string/escape aware),
                             largest parseable candidate wins
4. repair_truncated_json  - closes unterminated containers, drops the last
                             incomplete element
5. parse_lenient          - json_repair as the last resort

Each tier is a standalone function and returns None when it cannot help.
"""

import hashlib
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from json_repair import repair_json

from .errors import MalformedOutputError, TruncatedOutputError

logger = logging.getLogger(__name__)

_LITERAL = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null")
_CLOSERS = {"{": "}", "[": "]"}


def safe_log_content(content: str, max_chars: int = 120) -> str:
    """
    Create a safe log representation of content.

    Args:
        content: Content to log
        max_chars: Maximum characters to show

    Returns:
        Safe log string with length and hash
    """
    if not content:
        return "(empty)"

    content_hash = hashlib.sha256(content.encode()).hexdigest()[:12]
    preview = content[:max_chars].replace('\n', ' ')

    return f"len={len(content)} hash={content_hash} preview='{preview}...'"


# =============================================================================
# Scanning helpers
# =============================================================================

def scan_top_level_objects(text: str) -> Tuple[List[str], str]:
    """
    Find complete top-level {...} objects in text.

    Braces inside string values are ignored and backslash escapes are honored.
    Returns (objects, remainder) where remainder is an unterminated trailing
    object ("" if none).
    """
    objects: List[str] = []
    depth = 0
    start: Optional[int] = None
    in_string = False
    escape = False

    for i, char in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = i
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                objects.append(text[start:i + 1])
                start = None

    remainder = text[start:] if start is not None else ""
    return objects, remainder


def strip_code_fences(content: str) -> str:
    """Return the body of the first ```json / ``` block, or the stripped text"""
    content = content.strip()
    if "```json" in content:
        start = content.find("```json") + 7
    elif "```" in content:
        start = content.find("```") + 3
    else:
        return content

    end = content.find("```", start)
    if end > start:
        return content[start:end].strip()
    # Unterminated fence (typical for truncated output)
    return content[start:].strip()


def remove_trailing_commas(text: str) -> str:
    """Remove commas directly before } or ], leaving string values untouched"""
    out: List[str] = []
    in_string = False
    escape = False

    for char in text:
        if in_string:
            out.append(char)
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "}]":
            j = len(out) - 1
            while j >= 0 and out[j].isspace():
                j -= 1
            if j >= 0 and out[j] == ",":
                del out[j]
        out.append(char)

    return "".join(out)


def _as_object(data: Any) -> Optional[Dict[str, Any]]:
    return data if isinstance(data, dict) else None


# =============================================================================
# Tiers
# =============================================================================

def parse_strict(content: str) -> Optional[Dict[str, Any]]:
    try:
        return _as_object(json.loads(content.strip()))
    except (json.JSONDecodeError, AttributeError):
        return None


def parse_after_cleanup(content: str) -> Optional[Dict[str, Any]]:
    cleaned = remove_trailing_commas(strip_code_fences(content))
    try:
        return _as_object(json.loads(cleaned))
    except json.JSONDecodeError:
        return None


def extract_balanced_object(content: str) -> Optional[Dict[str, Any]]:
    """Largest complete {...} block that parses (with trailing-comma cleanup as a second try)"""
    objects, _ = scan_top_level_objects(content)
    for block in sorted(objects, key=len, reverse=True):
        for candidate in (block, remove_trailing_commas(block)):
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data
    return None


def _string_end(text: str, start: int) -> Optional[int]:
    """Index just past the closing quote of the string opening at `start`"""
    escape = False
    for i in range(start + 1, len(text)):
        char = text[i]
        if escape:
            escape = False
        elif char == "\\":
            escape = True
        elif char == '"':
            return i + 1
    return None


def repair_truncated_json(content: str) -> Optional[Dict[str, Any]]:
    """
    Repair a JSON object cut off before its closing brackets.

    Scans from the first '{' and remembers the last position where the text so
    far, plus closing brackets, is valid JSON. Array elements are kept only when
    complete, so a half-written object inside a list is dropped as a whole; a
    partially written nested object outside any list keeps its complete fields.
    """
    text = strip_code_fences(content)
    start = text.find("{")
    if start < 0:
        return None
    text = text[start:]

    stack: List[str] = []
    phases: List[str] = []
    safe_end: Optional[int] = None
    safe_stack: Tuple[str, ...] = ()

    def mark_safe(position: int) -> None:
        nonlocal safe_end, safe_stack
        if "[" not in stack[:-1]:
            safe_end = position
            safe_stack = tuple(stack)

    def value_done(position: int) -> None:
        phases[-1] = "comma"
        mark_safe(position)

    i = 0
    n = len(text)
    while i < n:
        char = text[i]
        if char.isspace():
            i += 1
            continue

        if char == '"':
            end = _string_end(text, i)
            if end is None or not stack:
                break
            if stack[-1] == "{" and phases[-1] == "key":
                phases[-1] = "colon"
            else:
                value_done(end)
            i = end
        elif char in "{[":
            stack.append(char)
            phases.append("key" if char == "{" else "value")
            mark_safe(i + 1)
            i += 1
        elif char in "}]":
            if not stack:
                break
            stack.pop()
            phases.pop()
            if not stack:
                safe_end, safe_stack = i + 1, ()
                break
            value_done(i + 1)
            i += 1
        elif char == ":" and stack:
            phases[-1] = "value"
            i += 1
        elif char == "," and stack:
            phases[-1] = "key" if stack[-1] == "{" else "value"
            i += 1
        else:
            match = _LITERAL.match(text, i)
            # A literal touching the end of the text may itself be cut off
            if match is None or match.end() >= n or not stack:
                break
            if not (text[match.end()].isspace() or text[match.end()] in ",}]"):
                break
            value_done(match.end())
            i = match.end()

    if safe_end is None:
        return None

    repaired = text[:safe_end].rstrip().rstrip(",")
    repaired += "".join(_CLOSERS[opener] for opener in reversed(safe_stack))
    try:
        return _as_object(json.loads(repaired))
    except json.JSONDecodeError:
        logger.debug(f"Truncation repair produced invalid JSON: {safe_log_content(repaired)}")
        return None


def parse_lenient(content: str) -> Optional[Dict[str, Any]]:
    """Last resort: json_repair's lenient parser"""
    try:
        data = repair_json(strip_code_fences(content), return_objects=True)
    except (ValueError, RecursionError) as e:
        logger.debug(f"Lenient JSON repair failed: {e}")
        return None
    data = _as_object(data)
    return data or None


# =============================================================================
# Chain
# =============================================================================

def parse_json_robust(content: str) -> Tuple[Optional[Dict], bool, str]:
    """
    Parse JSON content robustly, handling common LLM output issues.

    Handles:
    - Empty content
    - Markdown code blocks (```json...```)
    - Prefix/trailing prose around the JSON
    - Multiple JSON objects (takes largest)
    - Trailing commas
    - Output truncated before the closing brackets

    Args:
        content: Raw content from LLM

    Returns:
        Tuple of (parsed_dict, success, error_message)
    """
    if not content or not content.strip():
        return None, False, "Empty content"

    for tier in (parse_strict, parse_after_cleanup, extract_balanced_object):
        data = tier(content)
        if data is not None:
            return data, True, ""

    data = repair_truncated_json(content)
    if data:
        logger.info("JSON recovered by truncation repair")
        return data, True, ""

    data = parse_lenient(content)
    if data:
        logger.info("JSON recovered by lenient repair")
        return data, True, ""

    return None, False, f"No JSON object found ({safe_log_content(content)})"


def extract_json_object(content: str, truncated: bool = False) -> Dict[str, Any]:
    """
    Extract one JSON object or raise.

    When the backend reported truncation, the truncation-aware tier runs right
    after the strict tier; the generic chain is used otherwise.

    Raises:
        TruncatedOutputError: truncated output that could not be repaired
        MalformedOutputError: anything else that could not be parsed
    """
    if not truncated:
        data, ok, error = parse_json_robust(content)
        if ok:
            return data
        raise MalformedOutputError(error, raw=content or "")

    if not content or not content.strip():
        raise TruncatedOutputError("Empty truncated output", raw="")

    data = parse_strict(content) or repair_truncated_json(content) or parse_lenient(content)
    if data:
        return data
    raise TruncatedOutputError(f"Truncated output not repairable ({safe_log_content(content)})", raw=content)
