"""Operation lifecycle event names and the durable event-log record."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from trunkline.domain.errors import ValidationError
from trunkline.domain.models import parse_iso8601z, to_iso8601z


class EventType(StrEnum):
    """Events appended to an operation's event log."""

    OPERATION_CREATED = "operation:created"
    PLAN_CREATED = "plan:created"
    WORK_QUEUED = "work:queued"
    AGENT_LAUNCHED = "agent:launched"
    WORK_COMPLETED = "work:completed"
    WORK_INTERRUPTED = "work:interrupted"
    MERGE_QUEUED = "merge:queued"
    MERGE_PENDING = "merge:pending"
    MERGE_STARTED = "merge:started"
    MERGE_COMPLETED = "merge:completed"
    MERGE_CONFLICT = "merge:conflict"
    MERGE_RETRY = "merge:retry"
    MERGE_AUTO_RESUME = "merge:auto_resume"
    MERGE_WORKTREE_MISSING = "merge:worktree_missing"
    MERGE_VERIFICATION_FAILED = "merge:verification_failed"
    ERROR_FAILED = "error:failed"
    RESUME_FROM_ERROR = "resume:from_error"
    OPERATION_CANCELLED = "operation:cancelled"
    HOLD_SET = "hold:set"
    HOLD_CLEARED = "hold:cleared"
    UNBLOCK_NOTIFIED = "unblock:notified"
    SCHEMA_MIGRATED = "schema:migrated"
    MIGRATION_DEP_ADDED = "migration:dep_added"
    MIGRATION_DEP_FAILED = "migration:dep_failed"
    TRACKER_WARNING = "tracker:warn"


@dataclass(frozen=True, slots=True)
class EventRecord:
    """One line of an operation event log."""

    seq: int
    timestamp: datetime
    event: str
    detail: str

    def to_line(self) -> str:
        payload = {
            "detail": self.detail,
            "event": self.event,
            "seq": self.seq,
            "ts": to_iso8601z(self.timestamp),
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_line(cls, raw: str) -> EventRecord:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"EventRecord: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValidationError("EventRecord: JSON root must be an object")
        seq = parsed.get("seq")
        event = parsed.get("event")
        if isinstance(seq, bool) or not isinstance(seq, int) or seq < 1:
            raise ValidationError("EventRecord.seq: expected positive integer")
        if not isinstance(event, str) or not event:
            raise ValidationError("EventRecord.event: expected non-empty string")
        detail = parsed.get("detail", "")
        return cls(
            seq=seq,
            timestamp=parse_iso8601z(parsed.get("ts"), "EventRecord.ts"),
            event=event,
            detail=detail if isinstance(detail, str) else str(detail),
        )

    def render(self) -> str:
        return f"[{to_iso8601z(self.timestamp)}] {self.event}: {self.detail}"


__all__ = ["EventRecord", "EventType"]
