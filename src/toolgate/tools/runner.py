"""Batch execution of complete tool-call proposals for an orchestrating loop.

The runner sits between a model-facing protocol layer and the controller: it
takes the tool calls proposed in one model turn, runs them sequentially or in
parallel, and turns every terminal call into the content the model gets to
see next.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from toolgate.config import DEFAULT_MAX_ITERATIONS, ExecutionMode
from toolgate.tools.base import AIResponseMode, ToolDefinition, ToolResponse
from toolgate.tools.controller import InvocationController, ToolCall, ToolCallStatus
from toolgate.tools.errors import CallStateError

DISPLAYED_TO_USER = "[Result displayed to user]"
EXECUTED_SUCCESSFULLY = "[Tool executed successfully]"


@dataclass(frozen=True, slots=True)
class ProposedCall:
    """A tool call as proposed by the model, with complete arguments."""

    id: str
    name: str
    arguments: Mapping[str, Any] | str | None = None


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Model-facing terminal result of one call."""

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"tool_call_id": self.tool_call_id, "content": self.content, "success": self.success}
        if self.error is not None:
            out["error"] = self.error
        return out


class ToolRunner:
    def __init__(
        self,
        controller: InvocationController,
        *,
        execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.controller = controller
        self.execution_mode = execution_mode
        self.max_iterations = max_iterations
        self.logger = logger or logging.getLogger("toolgate.runner")
        self.iterations = 0
        self.max_iterations_reached = False

    async def execute_tool_calls(
        self, proposed: Iterable[ProposedCall], *, parallel: bool | None = None
    ) -> list[ToolResult]:
        """Run one turn's proposals and return their results in proposal order.

        Each invocation counts as one iteration; once ``max_iterations`` is
        reached no calls are started and an empty list is returned. Call ids
        must be unique within a batch. If one proposal cannot be started, the
        other calls of a parallel batch are cancelled before the error
        propagates.
        """

        batch = list(proposed)
        ids = [p.id for p in batch]
        duplicates = sorted({call_id for call_id in ids if ids.count(call_id) > 1})
        if duplicates:
            raise CallStateError(f"duplicate tool call ids in one batch: {', '.join(duplicates)}")
        if self.iterations >= self.max_iterations:
            self.max_iterations_reached = True
            self.logger.warning("max iterations reached (%d); skipping %d tool calls", self.max_iterations, len(batch))
            return []
        self.iterations += 1

        run_parallel = self.execution_mode is ExecutionMode.PARALLEL if parallel is None else parallel
        if run_parallel:
            calls = await self._run_parallel(batch)
        else:
            calls = [await self._run(p) for p in batch]
        return [format_result(call) for call in calls]

    def reset_iterations(self) -> None:
        self.iterations = 0
        self.max_iterations_reached = False

    async def _run_parallel(self, batch: list[ProposedCall]) -> list[ToolCall]:
        tasks = [asyncio.ensure_future(self._run(p)) for p in batch]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run(self, proposal: ProposedCall) -> ToolCall:
        return await self.controller.run_call(proposal.id, proposal.name, proposal.arguments)


def format_result(call: ToolCall) -> ToolResult:
    if call.status is ToolCallStatus.COMPLETED and call.result is not None:
        content = content_for_model(call.result, call.definition, call.arguments)
        return ToolResult(tool_call_id=call.id, content=content, success=True)

    if call.error is None:
        raise ValueError(f"tool call {call.id} has not finished ({call.status.value})")
    payload: dict[str, Any] = {"success": False, "error": call.error.message, "kind": call.error.kind.value}
    if call.result is not None and call.result.data is not None:
        payload["data"] = call.result.data
    return ToolResult(
        tool_call_id=call.id,
        content=json.dumps(payload, default=str),
        success=False,
        error=call.error.message,
    )


def content_for_model(response: ToolResponse, definition: ToolDefinition | None, arguments: Any = None) -> str:
    """Shape a successful response for the model.

    The response's own ``ai_response_mode`` / ``ai_context`` win over the
    tool's. ``none`` hides the result, ``brief`` shows only the context, and
    ``full`` shows everything, prefixed by the context when there is one.
    """

    mode = response.ai_response_mode
    if mode is None:
        mode = definition.ai_response_mode if definition is not None else AIResponseMode.FULL

    context = response.ai_context
    if context is None and definition is not None and definition.ai_context is not None:
        source = definition.ai_context
        context = source(response, arguments) if callable(source) else source

    if mode is AIResponseMode.NONE:
        return context or DISPLAYED_TO_USER
    if mode is AIResponseMode.BRIEF:
        return context or EXECUTED_SUCCESSFULLY
    full = json.dumps(response.to_dict(), default=str)
    if context:
        return f"{context}\n\nFull data: {full}"
    return full


__all__ = [
    "DISPLAYED_TO_USER",
    "EXECUTED_SUCCESSFULLY",
    "ProposedCall",
    "ToolResult",
    "ToolRunner",
    "content_for_model",
    "format_result",
]
