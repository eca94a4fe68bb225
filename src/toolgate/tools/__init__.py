"""Tool definitions, the invocation state machine and its collaborators.

``InvocationController`` ties together the ``ToolRegistry`` (what can be
called), the ``ApprovalGate`` (who must agree first), the ``ExecutionDriver``
(how a handler runs) and the ``EventEmitter`` (who hears about it).
"""

from __future__ import annotations

from toolgate.tools.approval import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalOutcome,
    ApprovalRequest,
    JsonPermissionStore,
    MemoryPermissionStore,
    PermissionLevel,
)
from toolgate.tools.base import (
    AIResponseMode,
    CancellationSignal,
    Tool,
    ToolContext,
    ToolDefinition,
    ToolLocation,
    ToolRequest,
    ToolResponse,
    failure,
    success,
)
from toolgate.tools.controller import InvocationController, ToolCall, ToolCallStatus
from toolgate.tools.driver import ExecutionDriver, ExecutionOutcome
from toolgate.tools.errors import (
    AlreadyResolvedError,
    CallStateError,
    ErrorKind,
    ToolError,
    ToolgateError,
    UnknownApprovalError,
    UnknownCallError,
    UnknownToolError,
    ValidationReason,
)
from toolgate.tools.events import (
    EventEmitter,
    EventRecorder,
    Subscription,
    ToolApprovalRequired,
    ToolArgsDelta,
    ToolCompleted,
    ToolEvent,
    ToolExecuting,
    ToolFailed,
    ToolStarted,
)
from toolgate.tools.registry import Registration, RegistryChange, ToolRegistry, UnknownTool
from toolgate.tools.runner import ProposedCall, ToolResult, ToolRunner

__all__ = [
    "AIResponseMode",
    "AlreadyResolvedError",
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalOutcome",
    "ApprovalRequest",
    "CallStateError",
    "CancellationSignal",
    "ErrorKind",
    "EventEmitter",
    "EventRecorder",
    "ExecutionDriver",
    "ExecutionOutcome",
    "InvocationController",
    "JsonPermissionStore",
    "MemoryPermissionStore",
    "PermissionLevel",
    "ProposedCall",
    "Registration",
    "RegistryChange",
    "Subscription",
    "Tool",
    "ToolApprovalRequired",
    "ToolArgsDelta",
    "ToolCall",
    "ToolCallStatus",
    "ToolCompleted",
    "ToolContext",
    "ToolDefinition",
    "ToolError",
    "ToolEvent",
    "ToolExecuting",
    "ToolFailed",
    "ToolLocation",
    "ToolRegistry",
    "ToolRequest",
    "ToolResponse",
    "ToolResult",
    "ToolRunner",
    "ToolStarted",
    "ToolgateError",
    "UnknownApprovalError",
    "UnknownCallError",
    "UnknownTool",
    "UnknownToolError",
    "ValidationReason",
    "failure",
    "success",
]
