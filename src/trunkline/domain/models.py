"""Dataclass domain records with strict validation and canonical serialization."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final, NoReturn, TypeVar

from trunkline.constants import OPERATION_SCHEMA_VERSION
from trunkline.domain.errors import ValidationError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_SUBJECT_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]{0,254}$")


class OperationType(StrEnum):
    FEATURE = "feature"
    FIX = "fix"
    CHORE = "chore"
    PLAN = "plan"
    ROADMAP = "roadmap"


class Phase(StrEnum):
    INIT = "init"
    PLANNED = "planned"
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PENDING_MERGE = "pending_merge"
    MERGED = "merged"
    CONFLICT = "conflict"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


class MergeStatus(StrEnum):
    MERGING = "merging"
    MERGED = "merged"
    CONFLICT = "conflict"
    FAILED = "failed"
    VERIFICATION_FAILED = "verification_failed"


class EntryKind(StrEnum):
    OPERATION = "operation"
    BRANCH = "branch"


class QueueStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT = "conflict"
    RESUMED = "resumed"


TERMINAL_PHASES: Final[frozenset[Phase]] = frozenset({Phase.MERGED, Phase.CANCELLED})
MERGE_READY_PHASES: Final[frozenset[Phase]] = frozenset({Phase.COMPLETED, Phase.PENDING_MERGE})
ACTIVE_QUEUE_STATUSES: Final[frozenset[QueueStatus]] = frozenset(
    {QueueStatus.PENDING, QueueStatus.PROCESSING}
)
TERMINAL_QUEUE_STATUSES: Final[frozenset[QueueStatus]] = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CONFLICT}
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_iso8601z(value: datetime) -> str:
    normalized = parse_iso8601z(value, "timestamp")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso8601z(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def validate_operation_name(value: object, path: str = "Operation.name") -> str:
    name = _as_str(value, path)
    if _NAME_RE.fullmatch(name) is None:
        _fail(path, f"invalid operation name {name!r}")
    return name


def validate_subject(value: object, path: str = "QueueEntry.subject") -> str:
    subject = _as_str(value, path)
    if _SUBJECT_RE.fullmatch(subject) is None or ".." in subject:
        _fail(path, f"invalid queue subject {subject!r}")
    return subject


@dataclass(frozen=True, slots=True)
class Operation:
    """Typed view over one operation document."""

    name: str
    type: OperationType
    phase: Phase
    created_at: datetime
    updated_at: datetime
    schema_version: int = OPERATION_SCHEMA_VERSION
    external_ref: str | None = None
    worktree_path: str | None = None
    branch: str | None = None
    plan_file: str | None = None
    session: str | None = None
    merge_commit: str | None = None
    merge_queued: bool = False
    merge_status: MergeStatus | None = None
    merge_error: str | None = None
    merge_resumed: bool = False
    conflict_retried: bool = False
    worktree_missing: bool = False
    held: bool = False
    held_at: datetime | None = None
    completed_at: datetime | None = None
    merged_at: datetime | None = None
    cancelled_at: datetime | None = None
    migrated_at: datetime | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {}
        for item in fields(self):
            payload[item.name] = _serialize(getattr(self, item.name))
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Operation:
        parsed = _expect_object(
            data,
            "Operation",
            required={"name", "type", "phase", "created_at", "updated_at"},
            optional=OPERATION_FIELDS,
        )
        return cls(
            name=validate_operation_name(parsed["name"]),
            type=_as_enum(OperationType, parsed["type"], "Operation.type"),
            phase=_as_enum(Phase, parsed["phase"], "Operation.phase"),
            created_at=parse_iso8601z(parsed["created_at"], "Operation.created_at"),
            updated_at=parse_iso8601z(parsed["updated_at"], "Operation.updated_at"),
            schema_version=_as_int(
                parsed.get("schema_version", OPERATION_SCHEMA_VERSION),
                "Operation.schema_version",
                minimum=0,
            ),
            external_ref=_as_optional_str(parsed.get("external_ref"), "Operation.external_ref"),
            worktree_path=_as_optional_str(parsed.get("worktree_path"), "Operation.worktree_path"),
            branch=_as_optional_str(parsed.get("branch"), "Operation.branch"),
            plan_file=_as_optional_str(parsed.get("plan_file"), "Operation.plan_file"),
            session=_as_optional_str(parsed.get("session"), "Operation.session"),
            merge_commit=_as_optional_str(parsed.get("merge_commit"), "Operation.merge_commit"),
            merge_queued=_as_bool(parsed.get("merge_queued", False), "Operation.merge_queued"),
            merge_status=_as_optional_enum(
                MergeStatus, parsed.get("merge_status"), "Operation.merge_status"
            ),
            merge_error=_as_optional_str(parsed.get("merge_error"), "Operation.merge_error"),
            merge_resumed=_as_bool(parsed.get("merge_resumed", False), "Operation.merge_resumed"),
            conflict_retried=_as_bool(
                parsed.get("conflict_retried", False), "Operation.conflict_retried"
            ),
            worktree_missing=_as_bool(
                parsed.get("worktree_missing", False), "Operation.worktree_missing"
            ),
            held=_as_bool(parsed.get("held", False), "Operation.held"),
            held_at=_as_optional_datetime(parsed.get("held_at"), "Operation.held_at"),
            completed_at=_as_optional_datetime(
                parsed.get("completed_at"), "Operation.completed_at"
            ),
            merged_at=_as_optional_datetime(parsed.get("merged_at"), "Operation.merged_at"),
            cancelled_at=_as_optional_datetime(
                parsed.get("cancelled_at"), "Operation.cancelled_at"
            ),
            migrated_at=_as_optional_datetime(parsed.get("migrated_at"), "Operation.migrated_at"),
            error=_as_optional_str(parsed.get("error"), "Operation.error"),
        )


OPERATION_FIELDS: Final[frozenset[str]] = frozenset(item.name for item in fields(Operation))


@dataclass(frozen=True, slots=True)
class QueueEntry:
    """One integration request, keyed by ``subject``."""

    subject: str
    kind: EntryKind
    priority: int
    enqueued_at: datetime
    updated_at: datetime
    status: QueueStatus = QueueStatus.PENDING
    external_ref: str | None = None
    note: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_QUEUE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUEUE_STATUSES

    @property
    def sort_key(self) -> tuple[int, datetime, str]:
        return (self.priority, self.enqueued_at, self.subject)

    def with_status(
        self, status: QueueStatus, *, now: datetime, note: str | None = None
    ) -> QueueEntry:
        return replace(self, status=status, updated_at=now, note=note)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "subject": self.subject,
            "kind": self.kind.value,
            "priority": self.priority,
            "enqueued_at": to_iso8601z(self.enqueued_at),
            "updated_at": to_iso8601z(self.updated_at),
            "status": self.status.value,
            "external_ref": self.external_ref,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> QueueEntry:
        parsed = _expect_object(
            data,
            "QueueEntry",
            required={"subject", "kind", "priority", "enqueued_at", "status"},
            optional={"updated_at", "external_ref", "note"},
        )
        enqueued_at = parse_iso8601z(parsed["enqueued_at"], "QueueEntry.enqueued_at")
        return cls(
            subject=validate_subject(parsed["subject"]),
            kind=_as_enum(EntryKind, parsed["kind"], "QueueEntry.kind"),
            priority=_as_int(parsed["priority"], "QueueEntry.priority"),
            enqueued_at=enqueued_at,
            updated_at=parse_iso8601z(
                parsed.get("updated_at", parsed["enqueued_at"]), "QueueEntry.updated_at"
            ),
            status=_as_enum(QueueStatus, parsed["status"], "QueueEntry.status"),
            external_ref=_as_optional_str(parsed.get("external_ref"), "QueueEntry.external_ref"),
            note=_as_optional_str(parsed.get("note"), "QueueEntry.note"),
        )


def _fail(path: str, message: str) -> NoReturn:
    raise ValidationError(f"{path}: {message}")


def _serialize(value: object) -> JSONValue:
    if isinstance(value, datetime):
        return to_iso8601z(value)
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise ValidationError(f"value is not JSON-serializable ({type(value).__name__})")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: frozenset[str] | set[str],
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | set(optional)
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return parse_iso8601z(value, path)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_optional_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum | None:
    if value is None:
        return None
    return _as_enum(enum_type, value, path)


__all__ = [
    "ACTIVE_QUEUE_STATUSES",
    "MERGE_READY_PHASES",
    "OPERATION_FIELDS",
    "TERMINAL_PHASES",
    "TERMINAL_QUEUE_STATUSES",
    "EntryKind",
    "JSONValue",
    "MergeStatus",
    "Operation",
    "OperationType",
    "Phase",
    "QueueEntry",
    "QueueStatus",
    "parse_iso8601z",
    "to_iso8601z",
    "utc_now",
    "validate_operation_name",
    "validate_subject",
]
