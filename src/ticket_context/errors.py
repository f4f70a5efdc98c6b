"""Error taxonomy for the ticket context engine.

Collaborator adapters raise these exceptions; the core converts them into
``Result.fail(...)`` envelopes at its entry points so callers always see a
stable code and message rather than a raw transport exception.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from ticket_context.schemas import ErrorInfo, Result


class ErrorCode(str, Enum):
    """Stable error codes surfaced to callers."""

    NOT_FOUND = "NOT_FOUND"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    RESOLUTION_ERROR = "RESOLUTION_ERROR"
    MATCH_ERROR = "MATCH_ERROR"
    TIMEOUT = "TIMEOUT"


class ContextEngineError(Exception):
    """Base error for the engine and its collaborators."""

    code: ErrorCode = ErrorCode.TRANSPORT_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_error_info(self) -> ErrorInfo:
        return ErrorInfo(code=self.code.value, message=self.message, details=self.details)


class NotFoundError(ContextEngineError):
    """A root or referenced issue (or pull request) does not exist."""

    code = ErrorCode.NOT_FOUND


class TransportError(ContextEngineError):
    """A collaborator call failed (HTTP error, auth failure, bad payload)."""

    code = ErrorCode.TRANSPORT_ERROR


class ResolutionError(ContextEngineError):
    """Unexpected failure while traversing the relationship graph."""

    code = ErrorCode.RESOLUTION_ERROR


class MatchError(ContextEngineError):
    """Unexpected failure inside the PR matching pipeline."""

    code = ErrorCode.MATCH_ERROR


class DeadlineExceededError(ContextEngineError):
    """A caller-imposed deadline elapsed before the work completed."""

    code = ErrorCode.TIMEOUT

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"{operation} exceeded its deadline of {timeout:.1f}s",
            {"operation": operation, "timeout_seconds": timeout},
        )
        self.operation = operation
        self.timeout = timeout


def as_failure(exc: ContextEngineError) -> Result[Any]:
    """Wrap an engine error in a failed Result envelope."""
    return Result(success=False, error=exc.to_error_info())
