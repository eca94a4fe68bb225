"""Human-in-the-loop approval for tool calls.

An ``ApprovalRequest`` suspends one call until the consuming layer invokes
exactly one of its continuations, ``approve`` or ``reject``. Resolving twice is
a bug in the caller and raises ``AlreadyResolvedError``. Cancellation resolves
an outstanding request as cancelled and releases every waiter.

Remembered decisions ("always allow", "always deny", "for this session") are
kept in a permission store consulted before a request is created.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, ValidationError

from toolgate.config import EXPECTED_FILE_MODE
from toolgate.paths import get_toolgate_home
from toolgate.tools.errors import AlreadyResolvedError, CallStateError, UnknownApprovalError

if TYPE_CHECKING:
    from toolgate.tools.controller import ToolCall

logger = logging.getLogger("toolgate.approval")


class ApprovalOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PermissionLevel(str, Enum):
    ASK = "ask"
    ALLOW_ALWAYS = "allow_always"
    DENY_ALWAYS = "deny_always"
    SESSION = "session"


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    outcome: ApprovalOutcome
    data: Any = None
    reason: str | None = None

    @property
    def approved(self) -> bool:
        return self.outcome is ApprovalOutcome.APPROVED


class ApprovalRequest:
    """Suspended approval for one tool call."""

    def __init__(
        self,
        call: ToolCall,
        message: str | None = None,
        *,
        on_resolved: Callable[[ApprovalRequest, PermissionLevel | None], None] | None = None,
    ) -> None:
        self.call = call
        self.message = message
        self.created_at = datetime.now(UTC)
        self.resolved_at: datetime | None = None
        self._decision: ApprovalDecision | None = None
        self._event: asyncio.Event | None = None
        self._on_resolved = on_resolved

    @property
    def call_id(self) -> str:
        return self.call.id

    @property
    def tool_name(self) -> str:
        return self.call.tool_name

    @property
    def arguments(self) -> Any:
        return self.call.arguments

    @property
    def resolved(self) -> bool:
        return self._decision is not None

    @property
    def decision(self) -> ApprovalDecision | None:
        return self._decision

    def approve(self, data: Any = None, *, permission: PermissionLevel | None = None) -> None:
        """Approve the call; ``data`` reaches the handler as ``context.approval_data``."""

        self._resolve(ApprovalDecision(ApprovalOutcome.APPROVED, data=data), permission)

    def reject(self, reason: str | None = None, *, permission: PermissionLevel | None = None) -> None:
        if reason is None:
            reason = "Tool execution was rejected by user"
        self._resolve(ApprovalDecision(ApprovalOutcome.REJECTED, reason=reason), permission)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Resolve as cancelled. Returns False if a decision was already made."""

        if self._decision is not None:
            return False
        self._set(ApprovalDecision(ApprovalOutcome.CANCELLED, reason=reason or "cancelled"))
        return True

    async def wait(self) -> ApprovalDecision:
        if self._decision is not None:
            return self._decision
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()
        assert self._decision is not None
        return self._decision

    def _resolve(self, decision: ApprovalDecision, permission: PermissionLevel | None) -> None:
        if self._decision is not None:
            raise AlreadyResolvedError(self.call_id, self._decision.outcome.value)
        self._set(decision)
        if self._on_resolved is not None:
            self._on_resolved(self, permission)

    def _set(self, decision: ApprovalDecision) -> None:
        self._decision = decision
        self.resolved_at = datetime.now(UTC)
        if self._event is not None:
            self._event.set()

    def __repr__(self) -> str:
        state = self._decision.outcome.value if self._decision else "pending"
        return f"ApprovalRequest(call_id={self.call_id!r}, tool={self.tool_name!r}, state={state})"


class ToolPermission(BaseModel):
    """Stored permission record for one tool."""

    model_config = ConfigDict(extra="forbid")

    tool_name: str
    level: PermissionLevel
    created_at: datetime
    last_used_at: datetime | None = None


class PermissionStore(Protocol):
    def get(self, tool_name: str) -> ToolPermission | None: ...

    def set(self, tool_name: str, level: PermissionLevel) -> None: ...

    def remove(self, tool_name: str) -> None: ...

    def all(self) -> list[ToolPermission]: ...

    def clear(self) -> None: ...


class MemoryPermissionStore:
    """In-process permission store; nothing survives the process."""

    def __init__(self) -> None:
        self._records: dict[str, ToolPermission] = {}

    def get(self, tool_name: str) -> ToolPermission | None:
        return self._records.get(tool_name)

    def set(self, tool_name: str, level: PermissionLevel) -> None:
        if level is PermissionLevel.ASK:
            self.remove(tool_name)
            return
        self._records[tool_name] = ToolPermission(tool_name=tool_name, level=level, created_at=datetime.now(UTC))

    def touch(self, tool_name: str) -> None:
        record = self._records.get(tool_name)
        if record is not None:
            self._records[tool_name] = record.model_copy(update={"last_used_at": datetime.now(UTC)})

    def remove(self, tool_name: str) -> None:
        self._records.pop(tool_name, None)

    def all(self) -> list[ToolPermission]:
        return list(self._records.values())

    def clear(self) -> None:
        self._records.clear()


class JsonPermissionStore(MemoryPermissionStore):
    """Permission store persisted as JSON; ``session`` grants stay in memory."""

    def __init__(self, path: Path | str | None = None) -> None:
        super().__init__()
        self.path = Path(path) if path else get_toolgate_home() / "permissions.json"
        self._load()

    def set(self, tool_name: str, level: PermissionLevel) -> None:
        super().set(tool_name, level)
        self._save()

    def remove(self, tool_name: str) -> None:
        super().remove(tool_name)
        self._save()

    def clear(self) -> None:
        super().clear()
        self._save()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            records = [ToolPermission.model_validate(item) for item in payload]
        except (TypeError, ValueError, ValidationError):
            # nothing is remembered from an unreadable store
            logger.warning("ignoring unreadable permission store %s", self.path, exc_info=True)
            return
        for record in records:
            self._records[record.tool_name] = record

    def _save(self) -> None:
        persisted = [
            record.model_dump(mode="json") for record in self._records.values() if record.level is not PermissionLevel.SESSION
        ]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(persisted, indent=2), encoding="utf-8")
        self.path.chmod(EXPECTED_FILE_MODE)


class ApprovalGate:
    """Creates approval requests and tracks them by call id."""

    def __init__(
        self,
        permission_store: PermissionStore | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.permissions: PermissionStore = permission_store or MemoryPermissionStore()
        self.logger = logger or logging.getLogger("toolgate.approval")
        self._requests: dict[str, ApprovalRequest] = {}

    def request_approval(self, call: ToolCall, message: str | None = None) -> ApprovalRequest:
        existing = self._requests.get(call.id)
        if existing is not None and not existing.resolved:
            raise CallStateError(f"tool call {call.id} already has an outstanding approval request")
        request = ApprovalRequest(call, message, on_resolved=self._on_resolved)
        self._requests[call.id] = request
        self.logger.info("approval required: %s (%s)", call.tool_name, call.id)
        return request

    def get(self, call_id: str) -> ApprovalRequest:
        request = self._requests.get(call_id)
        if request is None:
            raise UnknownApprovalError(call_id)
        return request

    def approve(self, call_id: str, data: Any = None, *, permission: PermissionLevel | None = None) -> None:
        self.get(call_id).approve(data, permission=permission)

    def reject(self, call_id: str, reason: str | None = None, *, permission: PermissionLevel | None = None) -> None:
        self.get(call_id).reject(reason, permission=permission)

    def pending(self) -> list[ApprovalRequest]:
        return [r for r in self._requests.values() if not r.resolved]

    def discard(self, call_id: str) -> None:
        self._requests.pop(call_id, None)

    def stored_decision(self, tool_name: str) -> PermissionLevel | None:
        """Return a remembered decision for ``tool_name``, or None to ask."""

        record = self.permissions.get(tool_name)
        if record is None or record.level is PermissionLevel.ASK:
            return None
        touch = getattr(self.permissions, "touch", None)
        if callable(touch):
            touch(tool_name)
        return record.level

    def _on_resolved(self, request: ApprovalRequest, permission: PermissionLevel | None) -> None:
        decision = request.decision
        assert decision is not None
        self.logger.info("approval %s: %s (%s)", decision.outcome.value, request.tool_name, request.call_id)
        if permission is not None:
            self.permissions.set(request.tool_name, permission)


__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalOutcome",
    "ApprovalRequest",
    "JsonPermissionStore",
    "MemoryPermissionStore",
    "PermissionLevel",
    "PermissionStore",
    "ToolPermission",
]
