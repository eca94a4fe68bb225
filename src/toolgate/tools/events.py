"""Tool-call lifecycle events and their delivery.

Every state transition of a call produces exactly one event. Events of one
call carry a strictly increasing ``sequence``; events of different calls may
interleave freely.

Delivery to async subscribers follows an explicit ``DeliveryPolicy``:

- ``buffer``: unbounded queue, the emitter never waits;
- ``block``: bounded queue, the emitter waits for the subscriber to catch up;
- ``drop-oldest``: bounded queue, the oldest queued event is discarded to make
  room. Drops are counted on the subscription and logged as warnings.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import TracebackType
from typing import Any, ClassVar, TypeAlias

from toolgate.config import DEFAULT_EVENT_BUFFER_SIZE, DeliveryPolicy
from toolgate.tools.base import ToolResponse
from toolgate.tools.errors import ErrorKind, ToolError, ValidationReason


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True, kw_only=True)
class _ToolEventBase:
    type: ClassVar[str] = ""

    call_id: str
    tool_name: str
    sequence: int = 0
    timestamp: datetime = field(default_factory=_now)

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "type": self.type,
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
        }
        record.update(self._payload())
        return record

    def _payload(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolStarted(_ToolEventBase):
    type: ClassVar[str] = "start"


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolArgsDelta(_ToolEventBase):
    type: ClassVar[str] = "args"

    delta: str

    def _payload(self) -> dict[str, Any]:
        return {"delta": self.delta}


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolApprovalRequired(_ToolEventBase):
    type: ClassVar[str] = "approval-required"

    arguments: Any = None
    message: str | None = None

    def _payload(self) -> dict[str, Any]:
        return {"arguments": _plain(self.arguments), "message": self.message}


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolExecuting(_ToolEventBase):
    type: ClassVar[str] = "executing"

    arguments: Any = None

    def _payload(self) -> dict[str, Any]:
        return {"arguments": _plain(self.arguments)}


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolCompleted(_ToolEventBase):
    type: ClassVar[str] = "completed"

    result: ToolResponse

    @property
    def data(self) -> Any:
        return self.result.data

    def _payload(self) -> dict[str, Any]:
        return {"result": self.result.to_dict()}


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolFailed(_ToolEventBase):
    type: ClassVar[str] = "error"

    kind: ErrorKind
    message: str
    reason: ValidationReason | None = None
    result: ToolResponse | None = None

    @classmethod
    def from_error(cls, error: ToolError, **fields: Any) -> ToolFailed:
        return cls(kind=error.kind, message=error.message, reason=error.reason, **fields)

    def _payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.reason is not None:
            payload["reason"] = self.reason.value
        if self.result is not None:
            payload["result"] = self.result.to_dict()
        return payload


ToolEvent: TypeAlias = ToolStarted | ToolArgsDelta | ToolApprovalRequired | ToolExecuting | ToolCompleted | ToolFailed

TERMINAL_EVENT_TYPES = frozenset({ToolCompleted.type, ToolFailed.type})

EventListener = Callable[[ToolEvent], None]


class _Sentinel:
    """Unique sentinel for queue termination."""


_CLOSED = _Sentinel()


class Subscription:
    """Async iterator over emitted events for one consumer."""

    def __init__(
        self,
        emitter: EventEmitter,
        *,
        maxsize: int,
        policy: DeliveryPolicy,
        call_id: str | None = None,
    ) -> None:
        self._emitter = emitter
        self.policy = policy
        self.call_id = call_id
        bounded = policy is not DeliveryPolicy.BUFFER
        self._queue: asyncio.Queue[ToolEvent | _Sentinel] = asyncio.Queue(maxsize=maxsize if bounded else 0)
        self._space = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def active(self) -> bool:
        return not self._closed

    def wants(self, event: ToolEvent) -> bool:
        return self.call_id is None or event.call_id == self.call_id

    async def deliver(self, event: ToolEvent) -> None:
        if self._closed:
            return
        if self.policy is DeliveryPolicy.BLOCK:
            while self._queue.full():
                self._space.clear()
                await self._space.wait()
                if self._closed:
                    return
            self._queue.put_nowait(event)
            return
        if self.policy is DeliveryPolicy.DROP_OLDEST and self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            self._emitter.logger.warning(
                "subscriber queue full, dropped oldest event (dropped=%d, call=%s)", self.dropped, event.call_id
            )
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._space.set()
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # consumer stops once it has drained the queue
            pass

    def unsubscribe(self) -> None:
        """Stop receiving events and release any emitter blocked on this queue."""

        self._emitter._remove(self)
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._space.set()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ToolEvent]:
        return self

    async def __anext__(self) -> ToolEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        self._space.set()
        if isinstance(item, _Sentinel):
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.unsubscribe()


class EventEmitter:
    """Publish tool events to synchronous listeners and async subscribers."""

    def __init__(
        self,
        *,
        policy: DeliveryPolicy = DeliveryPolicy.BUFFER,
        buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE,
        logger: logging.Logger | None = None,
    ) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.policy = policy
        self.buffer_size = buffer_size
        self.logger = logger or logging.getLogger("toolgate.events")
        self._listeners: list[EventListener] = []
        self._subscriptions: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def subscribe(
        self,
        *,
        maxsize: int | None = None,
        policy: DeliveryPolicy | None = None,
        call_id: str | None = None,
    ) -> Subscription:
        if self._closed:
            raise RuntimeError("event emitter is closed")
        subscription = Subscription(
            self,
            maxsize=maxsize or self.buffer_size,
            policy=policy or self.policy,
            call_id=call_id,
        )
        self._subscriptions.append(subscription)
        return subscription

    async def emit(self, event: ToolEvent) -> None:
        if self._closed:
            raise RuntimeError(f"event emitter is closed; cannot emit {event.type} for {event.call_id}")
        self.logger.debug("event %s #%d %s (%s)", event.type, event.sequence, event.call_id, event.tool_name)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception("event listener failed on %s for %s", event.type, event.call_id)
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                await subscription.deliver(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


class EventRecorder:
    """Listener that keeps every event it sees, for timelines and tests."""

    def __init__(self) -> None:
        self.events: list[ToolEvent] = []

    def __call__(self, event: ToolEvent) -> None:
        self.events.append(event)

    def for_call(self, call_id: str) -> list[ToolEvent]:
        return [e for e in self.events if e.call_id == call_id]

    def types(self, call_id: str | None = None) -> list[str]:
        events = self.events if call_id is None else self.for_call(call_id)
        return [e.type for e in events]

    def clear(self) -> None:
        self.events.clear()


def _plain(value: Any) -> Any:
    dump = getattr(value, "model_dump", None)
    return dump(mode="json") if callable(dump) else value


__all__ = [
    "EventEmitter",
    "EventListener",
    "EventRecorder",
    "Subscription",
    "TERMINAL_EVENT_TYPES",
    "ToolApprovalRequired",
    "ToolArgsDelta",
    "ToolCompleted",
    "ToolEvent",
    "ToolExecuting",
    "ToolFailed",
    "ToolStarted",
]
