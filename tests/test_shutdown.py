import logging
import signal
from pathlib import Path
from types import SimpleNamespace

import pytest

from toolgate.journal import JournalSink, JsonlEventWriter
from toolgate.shutdown import ShutdownManager, get_shutdown_manager
from toolgate.tools.events import ToolStarted


def _sample_writer(tmp_path: Path) -> JsonlEventWriter:
    return JsonlEventWriter(tmp_path / "session.jsonl")


def test_callbacks_run_once_in_reverse_order():
    mgr = ShutdownManager(install_hooks=False)
    calls: list[str] = []

    mgr.register(lambda: calls.append("first"))
    mgr.register(lambda: calls.append("second"))

    mgr.run()
    mgr.run()

    assert calls == ["second", "first"]
    assert mgr.ran is True


def test_exceptions_do_not_block_others():
    mgr = ShutdownManager(install_hooks=False)
    calls: list[str] = []

    def boom():
        raise RuntimeError("boom")

    mgr.register(boom)
    mgr.register(lambda: calls.append("ok"))

    mgr.run()

    assert calls == ["ok"]


def test_register_journal_closes(tmp_path: Path):
    sink = JournalSink(_sample_writer(tmp_path))
    sink(ToolStarted(call_id="c1", tool_name="echo"))

    mgr = ShutdownManager(install_hooks=False)
    mgr.register_journal(sink)

    mgr.run()

    assert sink.writer.closed is True


def test_register_logger_closes_handlers(tmp_path: Path):
    mgr = ShutdownManager(install_hooks=False)
    logger = logging.getLogger("test.shutdown")
    logger.setLevel(logging.INFO)
    handler = logging.FileHandler(tmp_path / "log.log")
    logger.addHandler(handler)

    mgr.register_logger(logger)
    mgr.run()

    assert logger.handlers == []
    assert handler.stream is None


def test_register_engine_calls_close():
    mgr = ShutdownManager(install_hooks=False)
    engine = SimpleNamespace(closed=False)
    engine.close = lambda: setattr(engine, "closed", True)

    mgr.register_engine(engine)  # type: ignore[arg-type]
    mgr.run()

    assert engine.closed is True


def test_sigterm_runs_callbacks():
    mgr = ShutdownManager(install_hooks=False)
    flag = SimpleNamespace(count=0)
    mgr.register(lambda: setattr(flag, "count", flag.count + 1))

    mgr._handle_signal(signal.SIGTERM, None)

    assert flag.count == 1


def test_sigint_runs_callbacks_then_interrupts():
    mgr = ShutdownManager(install_hooks=False)
    flag = SimpleNamespace(count=0)
    mgr.register(lambda: setattr(flag, "count", flag.count + 1))

    with pytest.raises(KeyboardInterrupt):
        mgr._handle_signal(signal.SIGINT, None)

    assert flag.count == 1


def test_register_resources_combines(tmp_path: Path):
    writer = _sample_writer(tmp_path)
    logger = logging.getLogger("test.shutdown.resources")
    handler = logging.FileHandler(tmp_path / "log.log")
    logger.addHandler(handler)

    mgr = ShutdownManager(install_hooks=False)
    mgr.register_resources(journals=[writer], loggers=[logger])
    mgr.run()

    assert writer.closed is True
    assert logger.handlers == []


def test_global_manager_is_created_once(monkeypatch: pytest.MonkeyPatch):
    created: list[ShutdownManager] = []

    class RecordingManager(ShutdownManager):
        def __init__(self) -> None:
            super().__init__(install_hooks=False)
            created.append(self)

    monkeypatch.setattr("toolgate.shutdown._manager", None)
    monkeypatch.setattr("toolgate.shutdown.ShutdownManager", RecordingManager)

    first = get_shutdown_manager()
    second = get_shutdown_manager()

    assert first is second
    assert created == [first]
