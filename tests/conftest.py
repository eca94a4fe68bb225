import asyncio
import pathlib
import sys
from collections.abc import Callable
from typing import Any

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"

# Ensure src/ is importable when running tests without installing the package.
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from toolgate.tools.approval import ApprovalGate  # noqa: E402
from toolgate.tools.base import ToolDefinition  # noqa: E402
from toolgate.tools.controller import InvocationController  # noqa: E402
from toolgate.tools.events import EventEmitter, EventRecorder  # noqa: E402
from toolgate.tools.registry import ToolRegistry  # noqa: E402

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"message": {"type": "string"}},
    "required": ["message"],
    "additionalProperties": False,
}

DELETE_SCHEMA = {
    "type": "object",
    "properties": {"itemId": {"type": "string"}},
    "required": ["itemId"],
}


@pytest.fixture(autouse=True)
def _isolate_toolgate_home(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path):
    """Point TOOLGATE_HOME at a per-test sandbox so we never touch the real FS."""

    home = tmp_path / "toolgate-home"
    home.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("TOOLGATE_HOME", str(home))
    for name in ("TOOLGATE_AUTO_APPROVE", "TOOLGATE_EXECUTION_MODE", "TOOLGATE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    yield home


def echo_tool(name: str = "echo", **overrides: Any) -> ToolDefinition:
    def handler(arguments: dict[str, Any], context: Any) -> dict[str, Any]:
        return {"success": True, "data": arguments}

    params: dict[str, Any] = {
        "name": name,
        "description": "Echo the message back",
        "handler": handler,
        "input_schema": ECHO_SCHEMA,
    }
    params.update(overrides)
    return ToolDefinition(**params)


class DeleteItem:
    """Approval-gated tool that records every invocation."""

    def __init__(self) -> None:
        self.calls: list[tuple[dict[str, Any], Any]] = []

    def handler(self, arguments: dict[str, Any], context: Any) -> dict[str, Any]:
        self.calls.append((arguments, context.approval_data))
        return {"success": True, "data": {"deleted": arguments["itemId"]}}

    def definition(self, **overrides: Any) -> ToolDefinition:
        params: dict[str, Any] = {
            "name": "delete_item",
            "description": "Delete an item",
            "handler": self.handler,
            "input_schema": DELETE_SCHEMA,
            "needs_approval": True,
            "approval_message": lambda args: f"Delete item {args['itemId']}?",
        }
        params.update(overrides)
        return ToolDefinition(**params)


@pytest.fixture
def delete_item() -> DeleteItem:
    return DeleteItem()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def make_controller(recorder: EventRecorder) -> Callable[..., InvocationController]:
    """Build a controller over the given tools, recording every event."""

    def _make(*definitions: ToolDefinition, gate: ApprovalGate | None = None, **kwargs: Any) -> InvocationController:
        emitter = EventEmitter()
        emitter.add_listener(recorder)
        return InvocationController(ToolRegistry(list(definitions)), emitter, gate, **kwargs)

    return _make


async def wait_until(predicate: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")
