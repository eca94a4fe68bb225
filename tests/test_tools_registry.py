import logging

import pytest

from conftest import echo_tool
from toolgate.tools.errors import UnknownToolError
from toolgate.tools.registry import RegistryAction, RegistryChange, ToolRegistry, UnknownTool


def test_lookup_after_register_and_unregister() -> None:
    registry = ToolRegistry()
    definition = echo_tool()

    registry.register(definition)
    assert registry.lookup("echo") is definition
    assert "echo" in registry

    assert registry.unregister("echo") is True
    missing = registry.lookup("echo")
    assert isinstance(missing, UnknownTool)
    assert missing.message == "Unknown tool: echo"
    assert registry.unregister("echo") is False


def test_lookup_result_is_pattern_matchable() -> None:
    registry = ToolRegistry([echo_tool()])

    def describe(name: str) -> str:
        match registry.lookup(name):
            case UnknownTool(name=missing):
                return f"missing {missing}"
            case definition:
                return f"found {definition.name}"

    assert describe("echo") == "found echo"
    assert describe("nope") == "missing nope"


def test_get_raises_unknown_tool_error() -> None:
    registry = ToolRegistry()

    with pytest.raises(UnknownToolError) as excinfo:
        registry.get("ghost")

    assert str(excinfo.value) == "Unknown tool: ghost"
    assert isinstance(excinfo.value, LookupError)


def test_last_registration_wins() -> None:
    registry = ToolRegistry()
    first = echo_tool(description="first")
    second = echo_tool(description="second")

    registry.register(first)
    registry.register(second)

    assert registry.get("echo") is second
    assert len(registry) == 1


def test_stale_handle_does_not_remove_newer_registration() -> None:
    registry = ToolRegistry()
    old_handle = registry.register(echo_tool(description="old"))
    new_handle = registry.register(echo_tool(description="new"))

    assert old_handle.active is False
    assert old_handle() is False
    assert registry.get("echo").description == "new"

    assert new_handle.unregister() is True
    assert registry.has("echo") is False


def test_unavailable_tools_are_invisible() -> None:
    registry = ToolRegistry([echo_tool(), echo_tool("hidden", available=False)])

    assert registry.names() == ("echo",)
    assert isinstance(registry.lookup("hidden"), UnknownTool)
    assert [spec["name"] for spec in registry.specs()] == ["echo"]


def test_specs_are_provider_neutral() -> None:
    registry = ToolRegistry([echo_tool()])

    (spec,) = registry.specs()

    assert spec == {
        "name": "echo",
        "description": "Echo the message back",
        "parameters": {
            "type": "object",
            "properties": {"message": {"type": "string"}},
            "required": ["message"],
            "additionalProperties": False,
        },
        "location": "client",
    }


def test_listeners_observe_changes() -> None:
    registry = ToolRegistry()
    changes: list[RegistryChange] = []
    remove = registry.add_listener(changes.append)

    handle = registry.register(echo_tool())
    registry.register(echo_tool("other"))
    handle()
    remove()
    registry.unregister("other")

    assert [(c.action, c.name) for c in changes] == [
        (RegistryAction.REGISTERED, "echo"),
        (RegistryAction.REGISTERED, "other"),
        (RegistryAction.UNREGISTERED, "echo"),
    ]
    assert changes[1].names == ("echo", "other")
    assert changes[2].names == ("other",)


def test_failing_listener_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    registry = ToolRegistry(logger=logging.getLogger("test.registry"))

    def boom(change: RegistryChange) -> None:
        raise RuntimeError("listener down")

    registry.add_listener(boom)
    with caplog.at_level(logging.ERROR, logger="test.registry"):
        registry.register(echo_tool())

    assert registry.has("echo")
    assert "registry listener failed" in caplog.text
