"""
Shared error types.

Placed in a separate module so every stage (and the tests) import the same
exception classes. Only SetupError is fatal to a whole run; the other kinds
are handled at the stage that raises them.
"""

from typing import List, Optional


class BriefEngineError(Exception):
    """Base class for pipeline errors."""


class BackendError(BriefEngineError):
    """Non-retryable backend failure (4xx other than 429, bad payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientBackendError(BackendError):
    """Rate limiting, server errors and network failures. Retried with backoff."""


class MalformedOutputError(BriefEngineError):
    """Structured output could not be parsed by any repair tier."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class TruncatedOutputError(MalformedOutputError):
    """Output hit the length ceiling and the truncation repair produced nothing usable."""


class ToolExecutionError(BriefEngineError):
    """Raised by a tool handler; the runtime turns it into an error tool result."""


class PipelineCancelled(BriefEngineError):
    """The caller's cancel signal fired while a backend call was in flight."""


class SetupError(BriefEngineError):
    """Unrecoverable input problem (e.g. no source material at all)."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or []


TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
