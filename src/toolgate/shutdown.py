"""Graceful shutdown management for toolgate.

Registers callbacks (journals, session loggers, engines) and ensures they are
flushed/closed exactly once on SIGINT, SIGTERM, or interpreter exit.
"""

from __future__ import annotations

import atexit
import logging
import signal
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from toolgate.journal import JournalSink, JsonlEventWriter

if TYPE_CHECKING:
    from toolgate.engine import ToolEngine


class ShutdownManager:
    """Coordinate graceful shutdown callbacks."""

    def __init__(self, *, install_hooks: bool = True) -> None:
        self._callbacks: list[Callable[[], None]] = []
        self._ran = False
        self._logger = logging.getLogger("toolgate.shutdown")
        self._old_handlers: dict[int, Any] = {}
        self._restored = False
        if install_hooks:
            for sig in (signal.SIGINT, signal.SIGTERM):
                self._old_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._handle_signal)
            atexit.register(self.run)

    @property
    def ran(self) -> bool:
        return self._ran

    def register(self, callback: Callable[[], None]) -> None:
        """Register a generic callback executed on shutdown (LIFO order)."""

        self._callbacks.append(callback)

    def register_journal(self, journal: JournalSink | JsonlEventWriter) -> None:
        """Register a journal to be closed on shutdown."""

        self.register(journal.close)

    def register_logger(self, logger: logging.Logger) -> None:
        """Register a logger whose handlers will be flushed/closed on shutdown."""

        def _close_handlers() -> None:
            for handler in list(logger.handlers):
                try:
                    handler.flush()
                finally:
                    handler.close()
                logger.removeHandler(handler)

        self.register(_close_handlers)

    def register_engine(self, engine: ToolEngine) -> None:
        """Release an engine's file resources; in-flight calls are left to ``aclose``."""

        self.register(engine.close)

    def register_resources(
        self,
        *,
        journals: Iterable[JournalSink | JsonlEventWriter] | None = None,
        loggers: Iterable[logging.Logger] | None = None,
    ) -> None:
        if journals:
            for journal in journals:
                self.register_journal(journal)
        if loggers:
            for logger in loggers:
                self.register_logger(logger)

    def run(self) -> None:
        """Execute registered callbacks once (latest registered first)."""

        if self._ran:
            return
        self._ran = True

        for callback in reversed(self._callbacks):
            try:
                callback()
            except Exception:
                self._logger.exception("Shutdown callback failed")
                continue
        self._restore_signal_handlers()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self.run()
        if signum == signal.SIGINT:
            raise KeyboardInterrupt

    def _restore_signal_handlers(self) -> None:
        if self._restored:
            return
        for sig, handler in self._old_handlers.items():
            signal.signal(sig, handler)
        self._restored = True


_manager: ShutdownManager | None = None


def get_shutdown_manager() -> ShutdownManager:
    """Return the process-wide manager, installing its hooks on first use."""

    global _manager
    if _manager is None:
        _manager = ShutdownManager()
    return _manager


__all__ = ["ShutdownManager", "get_shutdown_manager"]
