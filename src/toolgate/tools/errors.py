"""Error taxonomy for tool calls.

Runtime failures of a call are values (``ToolError``) carried by the terminal
``error`` event. Caller-discipline bugs are exceptions deriving from
``ToolgateError`` and are raised immediately.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    UNKNOWN_TOOL = "unknown-tool"
    SCHEMA_VALIDATION = "schema-validation"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    HANDLER_FAILURE = "handler-failure"
    ALREADY_RESOLVED = "already-resolved"


class ValidationReason(str, Enum):
    """Distinguishes the two ways argument validation can fail."""

    MALFORMED_JSON = "malformed-json"
    SCHEMA_MISMATCH = "schema-mismatch"


@dataclass(frozen=True, slots=True)
class ToolError:
    """Terminal failure of a single tool call, safe to show in a UI."""

    kind: ErrorKind
    message: str
    reason: ValidationReason | None = None

    def __post_init__(self) -> None:
        if not self.message:
            raise ValueError("error message cannot be empty")

    def to_dict(self) -> dict[str, str]:
        data = {"kind": self.kind.value, "message": self.message}
        if self.reason is not None:
            data["reason"] = self.reason.value
        return data


class ToolgateError(Exception):
    """Base class for errors raised to callers of the runtime."""


class UnknownToolError(ToolgateError, LookupError):
    """Raised by ``ToolRegistry.get`` when no tool is registered under a name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class AlreadyResolvedError(ToolgateError):
    """Raised when an approval request is approved or rejected a second time."""

    kind = ErrorKind.ALREADY_RESOLVED

    def __init__(self, call_id: str, outcome: str) -> None:
        super().__init__(f"approval for tool call {call_id} was already {outcome}")
        self.call_id = call_id
        self.outcome = outcome


class UnknownApprovalError(ToolgateError, LookupError):
    """Raised when no approval request exists for a call id."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"no approval request for tool call {call_id}")
        self.call_id = call_id


class CallStateError(ToolgateError):
    """Raised for operations that the call's current state does not permit."""


class UnknownCallError(ToolgateError, LookupError):
    """Raised when the controller tracks no call under an id."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"unknown tool call: {call_id}")
        self.call_id = call_id


__all__ = [
    "AlreadyResolvedError",
    "CallStateError",
    "ErrorKind",
    "ToolError",
    "ToolgateError",
    "UnknownApprovalError",
    "UnknownCallError",
    "UnknownToolError",
    "ValidationReason",
]
