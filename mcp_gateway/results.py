"""
Outcome of a tool call as seen by the caller.

A call ends either in Success (the handler's payload) or Failure with a
stable `kind` the caller can branch on. `details` is only populated for
ValidationError.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class ErrorKind(str, Enum):
    """Failure categories a tool call can end in."""

    MALFORMED_REQUEST = "MalformedRequest"
    UNAUTHORIZED = "Unauthorized"
    UNKNOWN_TOOL = "UnknownTool"
    VALIDATION_ERROR = "ValidationError"
    FORBIDDEN = "Forbidden"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    INTERNAL_ERROR = "InternalError"

    @property
    def retryable(self) -> bool:
        """Whether an idempotent caller may retry. The gateway never retries itself."""
        return self in (ErrorKind.TIMEOUT, ErrorKind.CANCELLED)


@dataclass(frozen=True)
class Success:
    """Tool call result carrying the handler's JSON payload."""

    payload: Mapping[str, Any]

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """Tool call failure; message and details are safe to return to the caller."""

    kind: ErrorKind
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details:
            data["details"] = dict(self.details)
        return data


ToolResult = Union[Success, Failure]
