"""Handler invocation with result normalization."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from toolgate.logging import stringify
from toolgate.tools.base import ToolContext, ToolDefinition, ToolResponse
from toolgate.tools.errors import ErrorKind, ToolError


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """What one handler invocation produced.

    ``response`` is set whenever the handler returned (including a
    ``success=False`` response); ``error`` is set for every failure.
    """

    response: ToolResponse | None = None
    error: ToolError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ExecutionDriver:
    """Invoke tool handlers and normalize what they return or raise.

    The driver keeps no per-call state, so one instance serves any number of
    concurrent calls.
    """

    def __init__(self, *, timeout: float | None = None, logger: logging.Logger | None = None) -> None:
        self.timeout = timeout
        self.logger = logger or logging.getLogger("toolgate.driver")

    async def execute(self, definition: ToolDefinition, arguments: Any, context: ToolContext) -> ExecutionOutcome:
        if context.signal.cancelled:
            return _cancelled(context)

        self.logger.info("tool request: %s args=%s", definition.name, stringify(_loggable(arguments)))
        try:
            value = definition.handler(arguments, context)
            if inspect.isawaitable(value):
                value = await self._await_handler(value, context)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return _cancelled(context)
        except TimeoutError as exc:
            if self.timeout is None:
                return ExecutionOutcome(error=ToolError(ErrorKind.HANDLER_FAILURE, str(exc) or "TimeoutError"))
            message = f"Tool {definition.name} timed out after {self.timeout}s"
            self.logger.warning(message)
            return ExecutionOutcome(error=ToolError(ErrorKind.HANDLER_FAILURE, message))
        except Exception as exc:
            self.logger.debug("tool %s raised", definition.name, exc_info=True)
            message = str(exc) or type(exc).__name__
            return ExecutionOutcome(error=ToolError(ErrorKind.HANDLER_FAILURE, message))

        try:
            response = normalize_response(value)
        except ValueError as exc:
            return ExecutionOutcome(error=ToolError(ErrorKind.HANDLER_FAILURE, f"invalid tool response: {exc}"))
        self.logger.debug("tool response: %s result=%s", definition.name, stringify(response.to_dict()))
        if not response.success:
            message = response.error or response.message or f"Tool {definition.name} reported failure"
            return ExecutionOutcome(response=response, error=ToolError(ErrorKind.HANDLER_FAILURE, message))
        return ExecutionOutcome(response=response)

    async def _await_handler(self, awaitable: Any, context: ToolContext) -> Any:
        task = asyncio.ensure_future(awaitable)
        remove = context.signal.add_callback(lambda _reason: task.cancel())
        try:
            if self.timeout is None:
                return await task
            return await asyncio.wait_for(task, self.timeout)
        finally:
            remove()


def normalize_response(value: Any) -> ToolResponse:
    """Coerce a handler return value into a ``ToolResponse``.

    Mappings following the ``{success, data | error}`` convention are taken
    field by field, keeping ``data`` as the very same object. Any other value
    becomes the data of a successful response.
    """

    if isinstance(value, ToolResponse):
        return value
    if isinstance(value, Mapping) and isinstance(value.get("success"), bool):
        return ToolResponse.from_mapping(value)
    return ToolResponse(success=True, data=value)


def _cancelled(context: ToolContext) -> ExecutionOutcome:
    reason = context.signal.reason or "cancelled"
    return ExecutionOutcome(error=ToolError(ErrorKind.CANCELLED, reason))


def _loggable(arguments: Any) -> Any:
    dump = getattr(arguments, "model_dump", None)
    return dump(mode="json") if callable(dump) else arguments


__all__ = ["ExecutionDriver", "ExecutionOutcome", "normalize_response"]
