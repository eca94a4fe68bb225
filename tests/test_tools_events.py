import asyncio
import logging

import pytest

from toolgate.config import DeliveryPolicy
from toolgate.tools.base import ToolResponse
from toolgate.tools.errors import ErrorKind, ToolError, ValidationReason
from toolgate.tools.events import (
    EventEmitter,
    EventRecorder,
    ToolArgsDelta,
    ToolCompleted,
    ToolFailed,
    ToolStarted,
)


def _started(call_id: str, sequence: int = 1) -> ToolStarted:
    return ToolStarted(call_id=call_id, tool_name="echo", sequence=sequence)


@pytest.mark.asyncio
async def test_listeners_and_subscriptions_receive_events() -> None:
    emitter = EventEmitter()
    recorder = EventRecorder()
    emitter.add_listener(recorder)
    subscription = emitter.subscribe()

    await emitter.emit(_started("c1"))
    await emitter.emit(ToolArgsDelta(call_id="c1", tool_name="echo", sequence=2, delta="{}"))
    await emitter.close()

    received = [event async for event in subscription]
    assert [e.type for e in received] == ["start", "args"]
    assert recorder.types("c1") == ["start", "args"]


@pytest.mark.asyncio
async def test_subscription_filters_by_call_id() -> None:
    emitter = EventEmitter()
    subscription = emitter.subscribe(call_id="c2")

    await emitter.emit(_started("c1"))
    await emitter.emit(_started("c2"))
    await emitter.close()

    assert [e.call_id async for e in subscription] == ["c2"]


@pytest.mark.asyncio
async def test_failing_listener_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    emitter = EventEmitter(logger=logging.getLogger("test.events"))
    recorder = EventRecorder()

    def boom(event: object) -> None:
        raise RuntimeError("sink down")

    emitter.add_listener(boom)
    emitter.add_listener(recorder)
    with caplog.at_level(logging.ERROR, logger="test.events"):
        await emitter.emit(_started("c1"))

    assert recorder.types() == ["start"]
    assert "event listener failed on start for c1" in caplog.text


@pytest.mark.asyncio
async def test_drop_oldest_counts_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    emitter = EventEmitter(logger=logging.getLogger("test.events.drop"))
    subscription = emitter.subscribe(maxsize=2, policy=DeliveryPolicy.DROP_OLDEST)

    with caplog.at_level(logging.WARNING, logger="test.events.drop"):
        for sequence in range(1, 5):
            await emitter.emit(_started(f"c{sequence}", sequence))
    await emitter.close()

    assert subscription.dropped == 2
    assert "dropped oldest event" in caplog.text
    assert [e.call_id async for e in subscription] == ["c3", "c4"]


@pytest.mark.asyncio
async def test_block_policy_waits_for_consumer() -> None:
    emitter = EventEmitter(policy=DeliveryPolicy.BLOCK, buffer_size=1)
    subscription = emitter.subscribe()

    await emitter.emit(_started("c1"))
    pending = asyncio.create_task(emitter.emit(_started("c2")))
    await asyncio.sleep(0)
    assert not pending.done()

    first = await subscription.__anext__()
    await asyncio.wait_for(pending, 1)
    second = await subscription.__anext__()

    assert (first.call_id, second.call_id) == ("c1", "c2")


@pytest.mark.asyncio
async def test_unsubscribe_releases_blocked_emitter() -> None:
    emitter = EventEmitter(policy=DeliveryPolicy.BLOCK, buffer_size=1)
    subscription = emitter.subscribe()

    await emitter.emit(_started("c1"))
    pending = asyncio.create_task(emitter.emit(_started("c2")))
    await asyncio.sleep(0)
    subscription.unsubscribe()
    await asyncio.wait_for(pending, 1)

    assert subscription.active is False
    assert [e async for e in subscription] == []


@pytest.mark.asyncio
async def test_buffer_policy_is_unbounded() -> None:
    emitter = EventEmitter(buffer_size=1)
    subscription = emitter.subscribe()

    for sequence in range(1, 11):
        await emitter.emit(_started(f"c{sequence}", sequence))
    await emitter.close()

    assert len([e async for e in subscription]) == 10
    assert subscription.dropped == 0


@pytest.mark.asyncio
async def test_emit_after_close_raises() -> None:
    emitter = EventEmitter()
    await emitter.close()

    with pytest.raises(RuntimeError):
        await emitter.emit(_started("c1"))
    with pytest.raises(RuntimeError):
        emitter.subscribe()


def test_buffer_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        EventEmitter(buffer_size=0)


def test_records_are_json_friendly() -> None:
    response = ToolResponse(success=True, data={"message": "hi"})
    completed = ToolCompleted(call_id="c1", tool_name="echo", sequence=3, result=response)
    failed = ToolFailed.from_error(
        ToolError(ErrorKind.SCHEMA_VALIDATION, "bad json", ValidationReason.MALFORMED_JSON),
        call_id="c2",
        tool_name="echo",
        sequence=2,
    )

    record = completed.to_record()
    assert record["type"] == "completed"
    assert record["result"] == {"success": True, "data": {"message": "hi"}}
    assert isinstance(record["timestamp"], str)
    assert completed.data == {"message": "hi"}

    assert failed.to_record()["kind"] == "schema-validation"
    assert failed.to_record()["reason"] == "malformed-json"
    assert "result" not in failed.to_record()
