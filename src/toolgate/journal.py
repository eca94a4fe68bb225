"""Session journals: lifecycle events persisted as JSONL.

A journal lives at ``~/.toolgate/sessions/<session>/events.jsonl``. Each line
is one tool event, which is enough to rebuild every call's timeline after the
fact.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from toolgate.paths import sessions_root
from toolgate.tools.events import TERMINAL_EVENT_TYPES, ToolEvent

_COMMON_KEYS = ("type", "call_id", "tool_name", "sequence", "timestamp")


class JournalEntry(BaseModel):
    """Validated journal line."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    timestamp: datetime
    event_type: str
    call_id: str
    tool_name: str
    sequence: int
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES

    @classmethod
    def from_event(cls, event: ToolEvent) -> JournalEntry:
        record = event.to_record()
        payload = {k: v for k, v in record.items() if k not in _COMMON_KEYS}
        return cls(
            timestamp=event.timestamp,
            event_type=event.type,
            call_id=event.call_id,
            tool_name=event.tool_name,
            sequence=event.sequence,
            payload=json.loads(json.dumps(payload, default=_json_default)),
        )


def generate_session_id(now: datetime | None = None) -> str:
    """Return a session id in the form YYYYMMDDHHMM-uuid4.

    ``now`` exists to ease testing and determinism; it defaults to current UTC.
    """

    instant = now or datetime.now(UTC)
    timestamp = instant.strftime("%Y%m%d%H%M")
    return f"{timestamp}-{uuid4()}"


class JsonlEventWriter:
    """Append-only JSONL writer for journal entries."""

    def __init__(self, path: Path | str, *, fsync_every: int | None = None) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("a", encoding="utf-8")
        self._closed = False
        self._fsync_every = fsync_every
        self._since_fsync = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def append(self, entry: JournalEntry) -> None:
        if self._closed:
            raise ValueError(f"journal {self.path} is closed")
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False)
        self._file.write(line + "\n")
        self._file.flush()
        if self._fsync_every is not None:
            self._since_fsync += 1
            if self._since_fsync >= self._fsync_every:
                os.fsync(self._file.fileno())
                self._since_fsync = 0

    def close(self) -> None:
        if self._closed:
            return
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        self._closed = True

    def __enter__(self) -> JsonlEventWriter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class JournalSink:
    """Event listener that appends every event to a journal.

    Once the writer is closed, further events are ignored so that shutdown
    order between the emitter and the journal does not matter.
    """

    def __init__(self, writer: JsonlEventWriter) -> None:
        self.writer = writer

    def __call__(self, event: ToolEvent) -> None:
        if self.writer.closed:
            return
        self.writer.append(JournalEntry.from_event(event))

    def close(self) -> None:
        self.writer.close()


def iter_entries(path: Path | str) -> Iterator[JournalEntry]:
    """Yield validated entries from a JSONL file.

    Blank lines are skipped; malformed or invalid lines raise ``ValidationError``
    from Pydantic.
    """

    with Path(path).open("r", encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped:
                continue
            yield JournalEntry.model_validate_json(stripped)


def timelines(entries: Iterable[JournalEntry]) -> dict[str, list[JournalEntry]]:
    """Group entries per call id, keeping journal order within each call."""

    grouped: dict[str, list[JournalEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.call_id, []).append(entry)
    return grouped


def session_dir(session_id: str, base_dir: Path | None = None) -> Path:
    return (base_dir or sessions_root()) / session_id


def session_path(session_id: str, base_dir: Path | None = None) -> Path:
    """Return the events JSONL path for a session inside its dedicated folder."""

    return session_dir(session_id, base_dir) / "events.jsonl"


def open_journal(session_id: str, base_dir: Path | None = None, *, fsync_every: int | None = None) -> JournalSink:
    return JournalSink(JsonlEventWriter(session_path(session_id, base_dir), fsync_every=fsync_every))


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    path: Path
    modified_at: datetime
    size_bytes: int


def list_sessions(base_dir: Path | None = None) -> list[SessionInfo]:
    root = base_dir or sessions_root()
    if not root.exists():
        return []

    entries: list[SessionInfo] = []
    for directory in root.iterdir():
        if not directory.is_dir():
            continue
        path = directory / "events.jsonl"
        if not path.exists():
            continue
        stat_result = path.stat()
        entries.append(
            SessionInfo(
                session_id=directory.name,
                path=path,
                modified_at=datetime.fromtimestamp(stat_result.st_mtime, tz=UTC),
                size_bytes=stat_result.st_size,
            )
        )

    # Most recent first
    entries.sort(key=lambda e: e.modified_at, reverse=True)
    return entries


def delete_session(session_id: str, base_dir: Path | None = None) -> bool:
    directory = session_dir(session_id, base_dir)
    if not directory.exists():
        return False
    for item in directory.iterdir():
        if item.is_file():
            item.unlink()
    try:
        directory.rmdir()
    except OSError:
        return False
    return True


def _json_default(value: Any) -> Any:
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        return dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return repr(value)


__all__ = [
    "JournalEntry",
    "JournalSink",
    "JsonlEventWriter",
    "SessionInfo",
    "delete_session",
    "generate_session_id",
    "iter_entries",
    "list_sessions",
    "open_journal",
    "session_dir",
    "session_path",
    "timelines",
]
