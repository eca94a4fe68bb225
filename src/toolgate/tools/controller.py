"""Per-call state machine driving a tool call from proposal to terminal result.

A call moves through::

    pending -> accumulating-args -> validated -> [approval-required ->] executing -> completed | error

``pending -> validated`` is taken when no argument fragments were sent, and
any non-terminal state may move to ``error``. Terminal calls admit no further
mutation.

Each call owns an ``asyncio.Lock`` that serializes its transition together
with the event describing it, so a call's event sub-sequence is always in
transition order while different calls interleave freely.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError

from toolgate.config import DEFAULT_MAX_ARGUMENT_BYTES, DEFAULT_MAX_EXECUTION_HISTORY
from toolgate.logging import stringify
from toolgate.tools.approval import ApprovalGate, ApprovalOutcome, ApprovalRequest, PermissionLevel
from toolgate.tools.base import CancellationSignal, ToolContext, ToolDefinition, ToolResponse
from toolgate.tools.driver import ExecutionDriver
from toolgate.tools.errors import (
    CallStateError,
    ErrorKind,
    ToolError,
    UnknownCallError,
    ValidationReason,
)
from toolgate.tools.events import (
    EventEmitter,
    ToolApprovalRequired,
    ToolArgsDelta,
    ToolCompleted,
    ToolExecuting,
    ToolFailed,
    ToolStarted,
)
from toolgate.tools.registry import ToolRegistry, UnknownTool
from toolgate.tools.schema import dump_arguments, format_validation_error


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    ACCUMULATING_ARGS = "accumulating-args"
    VALIDATED = "validated"
    APPROVAL_REQUIRED = "approval-required"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.ERROR)


_TRANSITIONS: dict[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.PENDING: frozenset(
        {ToolCallStatus.ACCUMULATING_ARGS, ToolCallStatus.VALIDATED, ToolCallStatus.ERROR}
    ),
    ToolCallStatus.ACCUMULATING_ARGS: frozenset({ToolCallStatus.VALIDATED, ToolCallStatus.ERROR}),
    ToolCallStatus.VALIDATED: frozenset(
        {ToolCallStatus.APPROVAL_REQUIRED, ToolCallStatus.EXECUTING, ToolCallStatus.ERROR}
    ),
    ToolCallStatus.APPROVAL_REQUIRED: frozenset({ToolCallStatus.EXECUTING, ToolCallStatus.ERROR}),
    ToolCallStatus.EXECUTING: frozenset({ToolCallStatus.COMPLETED, ToolCallStatus.ERROR}),
    ToolCallStatus.COMPLETED: frozenset(),
    ToolCallStatus.ERROR: frozenset(),
}


def can_transition(current: ToolCallStatus, target: ToolCallStatus) -> bool:
    return target in _TRANSITIONS[current]


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(eq=False)
class ToolCall:
    """One in-flight or finished invocation, owned by the controller.

    ``definition`` is captured when the call starts and stays fixed for its
    lifetime; it is None when the tool was unknown at that moment.
    """

    id: str
    tool_name: str
    definition: ToolDefinition | None = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    fragments: list[str] = field(default_factory=list)
    argument_bytes: int = 0
    arguments: Any = None
    result: ToolResponse | None = None
    error: ToolError | None = None
    approval: ApprovalRequest | None = None
    approval_data: Any = None
    signal: CancellationSignal = field(default_factory=CancellationSignal, repr=False)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    sequence: int = field(default=0, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    task: asyncio.Task[None] | None = field(default=None, repr=False)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    @property
    def raw_arguments(self) -> str:
        return "".join(self.fragments)

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence


ContextData = Mapping[str, Any] | Callable[[], Mapping[str, Any]]


class InvocationController:
    """Track tool calls by id and drive each one through its lifecycle."""

    def __init__(
        self,
        registry: ToolRegistry,
        emitter: EventEmitter | None = None,
        gate: ApprovalGate | None = None,
        driver: ExecutionDriver | None = None,
        *,
        auto_approve: bool = False,
        max_argument_bytes: int = DEFAULT_MAX_ARGUMENT_BYTES,
        max_execution_history: int = DEFAULT_MAX_EXECUTION_HISTORY,
        context_data: ContextData | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.emitter = emitter or EventEmitter()
        self.gate = gate or ApprovalGate()
        self.driver = driver or ExecutionDriver()
        self.auto_approve = auto_approve
        self.max_argument_bytes = max_argument_bytes
        self.max_execution_history = max_execution_history
        self.context_data = context_data
        self.logger = logger or logging.getLogger("toolgate.controller")
        self._calls: dict[str, ToolCall] = {}

    # ------------------------------------------------------------------
    # protocol-facing operations

    async def start_call(self, call_id: str, tool_name: str) -> ToolCall:
        """Begin tracking a call in ``pending`` and emit ``start``."""

        existing = self._calls.get(call_id)
        if existing is not None and not existing.is_terminal:
            raise CallStateError(f"tool call {call_id} is already in progress")

        found = self.registry.lookup(tool_name)
        definition = None if isinstance(found, UnknownTool) else found
        call = ToolCall(id=call_id, tool_name=tool_name, definition=definition)
        self._calls[call_id] = call
        self.logger.debug("tool call %s started: %s", call_id, tool_name)
        async with call.lock:
            await self._emit(call, ToolStarted)
        return call

    async def append_args(self, call_id: str, fragment: str) -> ToolCall:
        """Append one raw argument fragment in receipt order."""

        call = self.get(call_id)
        async with call.lock:
            if call.status not in (ToolCallStatus.PENDING, ToolCallStatus.ACCUMULATING_ARGS):
                raise CallStateError(f"cannot append arguments to tool call {call_id} in state {call.status.value}")
            call.fragments.append(fragment)
            call.argument_bytes += len(fragment.encode("utf-8"))
            if call.status is ToolCallStatus.PENDING:
                self._transition(call, ToolCallStatus.ACCUMULATING_ARGS)
            await self._emit(call, ToolArgsDelta, delta=fragment)
            if call.argument_bytes > self.max_argument_bytes:
                message = f"arguments for {call.tool_name} exceed {self.max_argument_bytes} bytes"
                await self._fail_locked(call, ToolError(ErrorKind.SCHEMA_VALIDATION, message))
        return call

    async def finalize_args(self, call_id: str) -> ToolCall:
        """Validate the accumulated arguments and run the call to a terminal state.

        Returns once the call is ``completed`` or ``error``. Calls that need
        approval stay suspended here until the approval is resolved or the
        call is cancelled.
        """

        call = self.get(call_id)
        async with call.lock:
            if call.status not in (ToolCallStatus.PENDING, ToolCallStatus.ACCUMULATING_ARGS):
                raise CallStateError(f"cannot finalize tool call {call_id} in state {call.status.value}")
            error = self._validate(call)
            if error is not None:
                await self._fail_locked(call, error)
                return call
            self._transition(call, ToolCallStatus.VALIDATED)
            call.task = asyncio.ensure_future(self._drive(call))
        try:
            await call.task
        except asyncio.CancelledError:
            # the drive task may have been cancelled before it ever ran
            call.signal.cancel("cancelled")
            await self._fail(call, self._cancelled_error(call))
            raise
        return call

    async def run_call(self, call_id: str, tool_name: str, arguments: Mapping[str, Any] | str | None = None) -> ToolCall:
        """Start, feed and finalize a call whose arguments are already complete."""

        await self.start_call(call_id, tool_name)
        if arguments is not None:
            raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
            if raw:
                call = await self.append_args(call_id, raw)
                if call.is_terminal:
                    return call
        return await self.finalize_args(call_id)

    async def cancel(self, call_id: str, reason: str = "cancelled") -> bool:
        """Cancel a non-terminal call.

        An outstanding approval is resolved as cancelled and a running handler
        is cancelled cooperatively. Returns False for unknown or finished calls.
        """

        reason = reason or "cancelled"
        call = self._calls.get(call_id)
        if call is None or call.is_terminal:
            return False
        self.logger.info("cancelling tool call %s: %s", call_id, reason)
        call.signal.cancel(reason)
        if call.task is None:
            # not finalized yet, nothing else will move it forward
            await self._fail(call, ToolError(ErrorKind.CANCELLED, reason))
        return True

    async def cancel_all(self, reason: str = "cancelled") -> int:
        cancelled = 0
        for call_id in list(self._calls):
            if await self.cancel(call_id, reason):
                cancelled += 1
        return cancelled

    async def wait(self, call_id: str) -> ToolCall:
        """Wait until the call reaches a terminal state."""

        call = self.get(call_id)
        await call.done.wait()
        return call

    # ------------------------------------------------------------------
    # inspection

    def get(self, call_id: str) -> ToolCall:
        call = self._calls.get(call_id)
        if call is None:
            raise UnknownCallError(call_id)
        return call

    def calls(self) -> list[ToolCall]:
        return list(self._calls.values())

    def approval_for(self, call_id: str) -> ApprovalRequest | None:
        return self.get(call_id).approval

    def pending_approvals(self) -> list[ApprovalRequest]:
        return self.gate.pending()

    def clear(self) -> None:
        """Forget finished calls; live calls are kept."""

        for call_id, call in list(self._calls.items()):
            if call.is_terminal:
                self._forget(call_id)

    # ------------------------------------------------------------------
    # internals

    def _validate(self, call: ToolCall) -> ToolError | None:
        definition = call.definition
        if definition is None:
            return ToolError(ErrorKind.UNKNOWN_TOOL, f"Unknown tool: {call.tool_name}")

        raw = call.raw_arguments
        try:
            payload = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            return ToolError(
                ErrorKind.SCHEMA_VALIDATION,
                f"invalid JSON arguments for {call.tool_name}: {exc.msg} at position {exc.pos}",
                ValidationReason.MALFORMED_JSON,
            )
        if not isinstance(payload, dict):
            return ToolError(
                ErrorKind.SCHEMA_VALIDATION,
                f"arguments for {call.tool_name} must be a JSON object, got {type(payload).__name__}",
                ValidationReason.MALFORMED_JSON,
            )

        try:
            instance = definition.input_model.model_validate(payload)
        except ValidationError as exc:
            return ToolError(
                ErrorKind.SCHEMA_VALIDATION,
                f"invalid arguments for {call.tool_name}: {format_validation_error(exc)}",
                ValidationReason.SCHEMA_MISMATCH,
            )
        call.arguments = instance if definition.uses_model_arguments else dump_arguments(instance)
        return None

    async def _drive(self, call: ToolCall) -> None:
        definition = call.definition
        assert definition is not None
        try:
            if call.signal.cancelled:
                await self._fail(call, self._cancelled_error(call))
                return
            if not await self._await_approval(call, definition):
                return

            async with call.lock:
                if call.is_terminal:
                    return
                if call.signal.cancelled:
                    await self._fail_locked(call, self._cancelled_error(call))
                    return
                self._transition(call, ToolCallStatus.EXECUTING)
                await self._emit(call, ToolExecuting, arguments=call.arguments)

            context = ToolContext(
                call_id=call.id,
                tool_name=call.tool_name,
                signal=call.signal,
                approval_data=call.approval_data,
                data=self._context_data(),
            )
            outcome = await self.driver.execute(definition, call.arguments, context)
            if outcome.error is not None:
                await self._fail(call, outcome.error, result=outcome.response)
            else:
                assert outcome.response is not None
                await self._complete(call, outcome.response)
        except asyncio.CancelledError:
            reason = "cancelled"
            call.signal.cancel(reason)
            if call.approval is not None:
                call.approval.cancel(reason)
            await self._fail(call, self._cancelled_error(call))
            raise

    async def _await_approval(self, call: ToolCall, definition: ToolDefinition) -> bool:
        try:
            required = await self._needs_approval(definition, call.arguments)
        except Exception as exc:
            self.logger.exception("approval policy for %s failed", call.tool_name)
            message = f"approval policy for {call.tool_name} failed: {exc}"
            await self._fail(call, ToolError(ErrorKind.HANDLER_FAILURE, message))
            return False
        if not required:
            return True
        if self.auto_approve:
            self.logger.debug("auto-approved %s (%s)", call.tool_name, call.id)
            return True

        stored = self.gate.stored_decision(call.tool_name)
        if stored in (PermissionLevel.ALLOW_ALWAYS, PermissionLevel.SESSION):
            self.logger.info("approved by stored permission %s: %s (%s)", stored.value, call.tool_name, call.id)
            return True
        if stored is PermissionLevel.DENY_ALWAYS:
            message = f"Tool {call.tool_name} is denied by a stored permission"
            await self._fail(call, ToolError(ErrorKind.REJECTED, message))
            return False

        message = definition.resolve_approval_message(call.arguments)
        async with call.lock:
            if call.is_terminal:
                return False
            request = self.gate.request_approval(call, message)
            call.approval = request
            self._transition(call, ToolCallStatus.APPROVAL_REQUIRED)
            await self._emit(call, ToolApprovalRequired, arguments=call.arguments, message=message)

        remove = call.signal.add_callback(request.cancel)
        try:
            decision = await request.wait()
        finally:
            remove()

        if decision.outcome is ApprovalOutcome.APPROVED:
            call.approval_data = decision.data
            return True
        kind = ErrorKind.REJECTED if decision.outcome is ApprovalOutcome.REJECTED else ErrorKind.CANCELLED
        await self._fail(call, ToolError(kind, decision.reason or kind.value))
        return False

    async def _needs_approval(self, definition: ToolDefinition, arguments: Any) -> bool:
        policy = definition.needs_approval
        if not callable(policy):
            return bool(policy)
        verdict = policy(arguments)
        if inspect.isawaitable(verdict):
            verdict = await verdict
        return bool(verdict)

    async def _complete(self, call: ToolCall, response: ToolResponse) -> None:
        async with call.lock:
            if call.is_terminal:
                return
            self._transition(call, ToolCallStatus.COMPLETED)
            call.result = response
            self.logger.debug("tool call %s completed: %s", call.id, stringify(response.to_dict()))
            await self._emit(call, ToolCompleted, result=response)
        self._prune()

    async def _fail(self, call: ToolCall, error: ToolError, result: ToolResponse | None = None) -> None:
        async with call.lock:
            if call.is_terminal:
                return
            await self._fail_locked(call, error, result)

    async def _fail_locked(self, call: ToolCall, error: ToolError, result: ToolResponse | None = None) -> None:
        self._transition(call, ToolCallStatus.ERROR)
        call.error = error
        call.result = result
        self.logger.info("tool call %s (%s) failed [%s]: %s", call.id, call.tool_name, error.kind.value, error.message)
        await self._emit(call, ToolFailed, kind=error.kind, message=error.message, reason=error.reason, result=result)
        self._prune()

    def _transition(self, call: ToolCall, target: ToolCallStatus) -> None:
        if not can_transition(call.status, target):
            raise CallStateError(
                f"tool call {call.id} cannot move from {call.status.value} to {target.value}"
            )
        call.status = target
        call.updated_at = _now()
        if target.terminal:
            call.finished_at = call.updated_at
            call.done.set()

    async def _emit(self, call: ToolCall, event_cls: type[Any], **fields: Any) -> None:
        event = event_cls(call_id=call.id, tool_name=call.tool_name, sequence=call.next_sequence(), **fields)
        await self.emitter.emit(event)

    def _cancelled_error(self, call: ToolCall) -> ToolError:
        return ToolError(ErrorKind.CANCELLED, call.signal.reason or "cancelled")

    def _context_data(self) -> Mapping[str, Any]:
        source = self.context_data
        if source is None:
            return {}
        if callable(source):
            return source()
        return source

    def _prune(self) -> None:
        finished = [c for c in self._calls.values() if c.is_terminal]
        excess = len(finished) - self.max_execution_history
        if excess <= 0:
            return
        finished.sort(key=lambda c: c.finished_at or c.updated_at)
        for call in finished[:excess]:
            self._forget(call.id)

    def _forget(self, call_id: str) -> None:
        self._calls.pop(call_id, None)
        self.gate.discard(call_id)


__all__ = [
    "InvocationController",
    "ToolCall",
    "ToolCallStatus",
    "can_transition",
]
