"""Engine facade wiring the tool runtime from ``Settings``."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from toolgate.config import Settings
from toolgate.journal import JournalSink, generate_session_id, open_journal
from toolgate.logging import configure_session_logger
from toolgate.shutdown import ShutdownManager
from toolgate.tools.approval import ApprovalGate, PermissionLevel, PermissionStore
from toolgate.tools.base import ToolDefinition
from toolgate.tools.controller import ContextData, InvocationController
from toolgate.tools.driver import ExecutionDriver
from toolgate.tools.events import EventEmitter, Subscription
from toolgate.tools.registry import Registration, ToolRegistry
from toolgate.tools.runner import ProposedCall, ToolResult, ToolRunner


class ToolEngine:
    """One registry, emitter, gate, driver, controller and runner sharing a session."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_id: str | None = None,
        tools: Iterable[ToolDefinition] = (),
        permission_store: PermissionStore | None = None,
        journal: JournalSink | None = None,
        logger: logging.Logger | None = None,
        context_data: ContextData | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.session_id = session_id or generate_session_id()
        self.logger = logger or logging.getLogger("toolgate")
        self.journal = journal

        self.registry = ToolRegistry(list(tools), logger=self.logger.getChild("registry"))
        self.emitter = EventEmitter(
            policy=self.settings.delivery_policy,
            buffer_size=self.settings.event_buffer_size,
            logger=self.logger.getChild("events"),
        )
        self.gate = ApprovalGate(permission_store, logger=self.logger.getChild("approval"))
        self.driver = ExecutionDriver(timeout=self.settings.handler_timeout, logger=self.logger.getChild("driver"))
        self.controller = InvocationController(
            self.registry,
            self.emitter,
            self.gate,
            self.driver,
            auto_approve=self.settings.auto_approve,
            max_argument_bytes=self.settings.max_argument_bytes,
            max_execution_history=self.settings.max_execution_history,
            context_data=context_data,
            logger=self.logger.getChild("controller"),
        )
        self.runner = ToolRunner(
            self.controller,
            execution_mode=self.settings.execution_mode,
            max_iterations=self.settings.max_iterations,
            logger=self.logger.getChild("runner"),
        )
        if self.journal is not None:
            self.emitter.add_listener(self.journal)
        self._owned_loggers: list[logging.Logger] = []
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        session_id: str | None = None,
        tools: Iterable[ToolDefinition] = (),
        permission_store: PermissionStore | None = None,
        log_to_file: bool = False,
        shutdown: ShutdownManager | None = None,
        context_data: ContextData | None = None,
    ) -> ToolEngine:
        """Build an engine with the journal and session logger the settings ask for."""

        session_id = session_id or generate_session_id()
        logger = None
        if log_to_file:
            logger = configure_session_logger(session_id, log_level=settings.log_level)
        journal = open_journal(session_id) if settings.journal_enabled else None
        engine = cls(
            settings,
            session_id=session_id,
            tools=tools,
            permission_store=permission_store,
            journal=journal,
            logger=logger,
            context_data=context_data,
        )
        if logger is not None:
            engine._owned_loggers.append(logger)
        if shutdown is not None:
            shutdown.register_engine(engine)
        engine.logger.info("engine started: session=%s tools=%s", session_id, ",".join(engine.registry.names()))
        return engine

    def register(self, definition: ToolDefinition) -> Registration:
        return self.registry.register(definition)

    def unregister(self, name: str) -> bool:
        return self.registry.unregister(name)

    def subscribe(self, **kwargs: Any) -> Subscription:
        return self.emitter.subscribe(**kwargs)

    async def execute_tool_calls(
        self, proposed: Iterable[ProposedCall], *, parallel: bool | None = None
    ) -> list[ToolResult]:
        return await self.runner.execute_tool_calls(proposed, parallel=parallel)

    def approve(self, call_id: str, data: Any = None, *, permission: PermissionLevel | None = None) -> None:
        self.gate.approve(call_id, data, permission=permission)

    def reject(self, call_id: str, reason: str | None = None, *, permission: PermissionLevel | None = None) -> None:
        self.gate.reject(call_id, reason, permission=permission)

    async def aclose(self) -> None:
        """Cancel live calls, end subscriptions and release file resources."""

        if self._closed:
            return
        live = [call for call in self.controller.calls() if not call.is_terminal]
        cancelled = await self.controller.cancel_all("engine closed")
        if cancelled:
            self.logger.info("cancelled %d tool calls on close", cancelled)
        for call in live:
            if call.task is not None:
                await asyncio.wait({call.task})
        await self.emitter.close()
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.journal is not None:
            self.journal.close()
        for logger in self._owned_loggers:
            for handler in list(logger.handlers):
                try:
                    handler.flush()
                finally:
                    handler.close()
                logger.removeHandler(handler)

    async def __aenter__(self) -> ToolEngine:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()


__all__ = ["ToolEngine"]
