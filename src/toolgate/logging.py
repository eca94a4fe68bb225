"""Logging setup for toolgate sessions.

Each session writes to ``~/.toolgate/sessions/<session>/log.txt``. The logger is
isolated (no propagation) and avoids duplicate handlers across repeated
initializations.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from toolgate.config import LogLevel
from toolgate.paths import sessions_root

MAX_LOGGED_CHARS = 2000


def session_log_path(session_id: str, base_dir: Path | None = None) -> Path:
    return (base_dir or sessions_root()) / session_id / "log.txt"


def configure_session_logger(
    session_id: str,
    *,
    log_level: LogLevel | str = LogLevel.INFO,
    base_dir: Path | None = None,
    max_bytes: int | None = None,
) -> logging.Logger:
    """Configure and return a file logger scoped to a session.

    Subsequent calls with the same session_id return the same logger without
    duplicating handlers. When ``max_bytes`` is given, an existing log file
    larger than that is truncated before the handler is attached.
    """

    logger_name = f"toolgate.session.{session_id}"
    logger = logging.getLogger(logger_name)

    level_value = _to_logging_level(log_level)
    logger.setLevel(level_value)
    logger.propagate = False

    if not logger.handlers:
        path = session_log_path(session_id, base_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        if max_bytes is not None and path.exists() and path.stat().st_size > max_bytes:
            path.write_text("", encoding="utf-8")

        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setLevel(level_value)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)

    return logger


def stringify(obj: Any) -> str:
    """Render a payload for log lines, truncated to keep logs readable."""

    try:
        text = json.dumps(obj, default=str)
    except (TypeError, ValueError):
        text = repr(obj)

    if len(text) > MAX_LOGGED_CHARS:
        return f"{text[:MAX_LOGGED_CHARS]}... [truncated]"
    return text


def _to_logging_level(value: LogLevel | str) -> int:
    mapping = {
        LogLevel.DEBUG: logging.DEBUG,
        LogLevel.INFO: logging.INFO,
        LogLevel.WARNING: logging.WARNING,
        LogLevel.ERROR: logging.ERROR,
    }
    if isinstance(value, LogLevel):
        return mapping[value]
    if isinstance(value, str):
        try:
            return mapping[LogLevel(value)]
        except ValueError:
            return logging.WARNING
    return logging.WARNING


__all__ = [
    "configure_session_logger",
    "session_log_path",
    "stringify",
    "_to_logging_level",
]
