"""Dynamic tool registry.

Tools come and go at runtime (for example as UI components mount and
unmount), so the registry is keyed by name and returns a handle from every
``register`` call. Mutations replace an immutable snapshot; readers always see
either the old or the new mapping, never a partial update.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any

from toolgate.tools.base import ToolDefinition
from toolgate.tools.errors import UnknownToolError


@dataclass(frozen=True, slots=True)
class UnknownTool:
    """Typed "not found" result of ``ToolRegistry.lookup``."""

    name: str

    @property
    def message(self) -> str:
        return f"Unknown tool: {self.name}"


class RegistryAction(str, Enum):
    REGISTERED = "registered"
    UNREGISTERED = "unregistered"


@dataclass(frozen=True, slots=True)
class RegistryChange:
    action: RegistryAction
    name: str
    names: tuple[str, ...]


RegistryListener = Callable[[RegistryChange], None]


class Registration:
    """Handle returned by ``register``; calling it unregisters the tool.

    A handle only removes the exact definition it registered, so an older
    handle cannot remove a tool that has since been re-registered.
    """

    def __init__(self, registry: ToolRegistry, definition: ToolDefinition) -> None:
        self._registry = registry
        self.definition = definition

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def active(self) -> bool:
        return self._registry._current(self.name) is self.definition

    def unregister(self) -> bool:
        if not self.active:
            return False
        return self._registry.unregister(self.name)

    def __call__(self) -> bool:
        return self.unregister()


class ToolRegistry:
    """Holds the currently available tool definitions."""

    def __init__(
        self,
        definitions: list[ToolDefinition] | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._tools: Mapping[str, ToolDefinition] = MappingProxyType({})
        self._listeners: list[RegistryListener] = []
        self.logger = logger or logging.getLogger("toolgate.registry")
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> Registration:
        """Add or replace a tool by name (last registration wins)."""

        updated = dict(self._tools)
        replaced = definition.name in updated
        updated[definition.name] = definition
        self._tools = MappingProxyType(updated)
        self.logger.debug("tool %s: %s", "replaced" if replaced else "registered", definition.name)
        self._notify(RegistryAction.REGISTERED, definition.name)
        return Registration(self, definition)

    def unregister(self, name: str) -> bool:
        if name not in self._tools:
            return False
        updated = dict(self._tools)
        del updated[name]
        self._tools = MappingProxyType(updated)
        self.logger.debug("tool unregistered: %s", name)
        self._notify(RegistryAction.UNREGISTERED, name)
        return True

    def lookup(self, name: str) -> ToolDefinition | UnknownTool:
        definition = self._tools.get(name)
        if definition is None or not definition.available:
            return UnknownTool(name)
        return definition

    def get(self, name: str) -> ToolDefinition:
        result = self.lookup(name)
        if isinstance(result, UnknownTool):
            raise UnknownToolError(name)
        return result

    def has(self, name: str) -> bool:
        return not isinstance(self.lookup(name), UnknownTool)

    def tools(self) -> list[ToolDefinition]:
        return [d for d in self._tools.values() if d.available]

    def names(self) -> tuple[str, ...]:
        return tuple(d.name for d in self.tools())

    def specs(self) -> list[dict[str, Any]]:
        """Provider-neutral tool list for the model-facing protocol layer."""

        return [d.spec() for d in self.tools()]

    def add_listener(self, listener: RegistryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _current(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def _notify(self, action: RegistryAction, name: str) -> None:
        change = RegistryChange(action=action, name=name, names=self.names())
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                self.logger.exception("registry listener failed for %s %s", action.value, name)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __len__(self) -> int:
        return len(self.tools())


__all__ = [
    "Registration",
    "RegistryAction",
    "RegistryChange",
    "RegistryListener",
    "ToolRegistry",
    "UnknownTool",
]
