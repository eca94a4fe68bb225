"""Core tool types: definitions, handler context and the result convention.

A tool is described by a ``ToolDefinition``. Its input contract is either a
JSON schema object or a Pydantic model class; handlers receive the validated
arguments (a ``dict`` or a model instance respectively) together with a
``ToolContext`` built fresh for every call.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Generic, TypeAlias, TypeVar

from pydantic import BaseModel

from toolgate.tools.schema import model_from_schema, schema_of

logger = logging.getLogger("toolgate.tools")

Req = TypeVar("Req", bound=BaseModel)
Res = TypeVar("Res")


class ToolLocation(str, Enum):
    """Where a tool runs. Informational routing hint only."""

    CLIENT = "client"
    SERVER = "server"


class AIResponseMode(str, Enum):
    """How much of a result the model gets to see."""

    NONE = "none"
    BRIEF = "brief"
    FULL = "full"


@dataclass(frozen=True, slots=True)
class ToolResponse:
    """Result convention shared by every handler: ``{success, data | error}``."""

    success: bool
    data: Any = None
    error: str | None = None
    message: str | None = None
    ai_context: str | None = None
    ai_response_mode: AIResponseMode | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> ToolResponse:
        mode = payload.get("ai_response_mode", payload.get("_aiResponseMode"))
        return cls(
            success=bool(payload["success"]),
            data=payload.get("data"),
            error=payload.get("error"),
            message=payload.get("message"),
            ai_context=payload.get("ai_context", payload.get("_aiContext")),
            ai_response_mode=AIResponseMode(mode) if mode is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        if self.message is not None:
            out["message"] = self.message
        return out


def success(data: Any = None, message: str | None = None) -> ToolResponse:
    return ToolResponse(success=True, data=data, message=message)


def failure(error: str) -> ToolResponse:
    return ToolResponse(success=False, error=error)


class CancellationSignal:
    """Cooperative cancellation flag shared by a call's approval and handler.

    Handlers may poll ``cancelled`` or await ``wait()``; runtime components
    register callbacks that fire once when the signal is cancelled.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the signal. Returns False if it was already cancelled."""

        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason or "cancelled"
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self._reason)
            except Exception:
                logger.exception("cancellation callback failed")
        return True

    def add_callback(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Run ``callback(reason)`` on cancellation; returns a remover."""

        if self._cancelled:
            callback(self._reason or "cancelled")
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self) -> str:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()
        return self._reason or "cancelled"


@dataclass(frozen=True, slots=True)
class ToolContext:
    """Execution context handed to a handler at call time.

    ``approval_data`` is whatever the human attached when approving the call;
    ``data`` is application state supplied by the engine owner.
    """

    call_id: str
    tool_name: str
    signal: CancellationSignal = field(default_factory=CancellationSignal)
    approval_data: Any = None
    data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.signal.cancelled


Handler: TypeAlias = Callable[[Any, ToolContext], Any]
ApprovalPredicate: TypeAlias = Callable[[Any], "bool | Awaitable[bool]"]
MessageFactory: TypeAlias = Callable[[Any], str]
AIContextFactory: TypeAlias = Callable[[ToolResponse, Any], str]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    handler: Handler
    input_schema: Mapping[str, Any] | type[BaseModel] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    location: ToolLocation = ToolLocation.CLIENT
    needs_approval: bool | ApprovalPredicate = False
    approval_message: str | MessageFactory | None = None
    title: str | MessageFactory | None = None
    render: Any = None
    available: bool = True
    ai_response_mode: AIResponseMode = AIResponseMode.FULL
    ai_context: str | AIContextFactory | None = None
    input_model: type[BaseModel] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("tool name cannot be empty")
        if not callable(self.handler):
            raise TypeError(f"handler for tool {self.name} must be callable")
        if isinstance(self.input_schema, type) and issubclass(self.input_schema, BaseModel):
            model = self.input_schema
        else:
            model = model_from_schema(self.name, self.input_schema)
        object.__setattr__(self, "input_model", model)

    @property
    def uses_model_arguments(self) -> bool:
        """True when the handler receives a Pydantic instance instead of a dict."""

        return isinstance(self.input_schema, type)

    @property
    def parameters(self) -> dict[str, Any]:
        return schema_of(self.input_schema)

    def spec(self) -> dict[str, Any]:
        """Provider-neutral description of the tool for the protocol layer."""

        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "location": self.location.value,
        }

    def resolve_approval_message(self, arguments: Any) -> str | None:
        if callable(self.approval_message):
            return self.approval_message(arguments)
        return self.approval_message

    def resolve_title(self, arguments: Any) -> str:
        if callable(self.title):
            return self.title(arguments)
        return self.title or self.name

    @classmethod
    def from_tool(cls, tool: Tool[Any, Any], **overrides: Any) -> ToolDefinition:
        """Adapt a class-based ``Tool`` into a definition."""

        def _handler(arguments: Any, context: ToolContext) -> Any:
            return tool.execute(arguments)

        params: dict[str, Any] = {
            "name": tool.name,
            "description": tool.description,
            "handler": _handler,
            "input_schema": tool.InputModel,
            "needs_approval": tool.requires_approval,
            "location": tool.location,
        }
        params.update(overrides)
        return cls(**params)


class ToolRequest(BaseModel):
    """Marker base class for tool requests."""


class Tool(Generic[Req, Res], ABC):
    """Abstract tool with a typed request model."""

    name: ClassVar[str]
    description: ClassVar[str]
    InputModel: ClassVar[type[BaseModel]]
    requires_approval: ClassVar[bool] = False
    location: ClassVar[ToolLocation] = ToolLocation.SERVER

    @abstractmethod
    def execute(self, request: Req) -> Res:
        """Run the tool and return a response."""


__all__ = [
    "AIResponseMode",
    "CancellationSignal",
    "Handler",
    "Tool",
    "ToolContext",
    "ToolDefinition",
    "ToolLocation",
    "ToolRequest",
    "ToolResponse",
    "failure",
    "success",
]
