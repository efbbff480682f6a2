"""
trunkline — operation state store

File: src/trunkline/persistence/operation_store.py
Last updated: 2026-10-19

Purpose
- Durable per-operation JSON document plus a segmented, append-only event log.

What should be included in this file
- Batched multi-field reads, single- and multi-field writes, and a compare-and-set
  ``apply`` used by guarded transitions.
- Event-log segments (current + N rotated) indexed by a monotonic sequence number.
- Migration on first read of an out-of-date document.

Functional requirements
- Every write is read-modify-atomic-replace under the document's lock file, so a
  reader never observes a partial update.
- A rejected ``apply`` writes nothing: the document stays byte-identical.
- Unreadable or unwritable documents raise ``StateStoreError``.

Non-functional requirements
- No cross-document transactions; callers order multi-document updates themselves.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePath
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import (
    DEFAULT_EVENT_LOG_KEEP_SEGMENTS,
    DEFAULT_EVENT_LOG_MAX_BYTES,
    DEFAULT_LOCK_ATTEMPTS,
    EVENT_LOG_NAME,
    OPERATION_DOCUMENT_NAME,
    OPERATION_SCHEMA_VERSION,
    OPERATIONS_DIRNAME,
)
from trunkline.domain.errors import (
    StateStoreError,
    UnknownOperationError,
    ValidationError,
)
from trunkline.domain.events import EventRecord, EventType
from trunkline.domain.models import (
    OPERATION_FIELDS,
    Operation,
    OperationType,
    Phase,
    to_iso8601z,
    utc_now,
    validate_operation_name,
)
from trunkline.persistence.locks import FileLock
from trunkline.persistence.migrations import DocumentMigrator
from trunkline.utils.fs import atomic_write_json

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping, Sequence

_DOCUMENT_LOCK_DELAY_SECONDS: Final[float] = 0.05
_TAIL_WINDOW_BYTES: Final[int] = 8192

Document = dict[str, object]


@dataclass(frozen=True, slots=True)
class DocumentChange:
    """Field updates and events produced by an ``apply`` decision."""

    updates: Mapping[str, object]
    events: tuple[tuple[str, str], ...] = ()


class EventLog:
    """Append-only event log split into a current segment and rotated archives."""

    def __init__(
        self,
        directory: Path,
        *,
        max_bytes: int = DEFAULT_EVENT_LOG_MAX_BYTES,
        keep_segments: int = DEFAULT_EVENT_LOG_KEEP_SEGMENTS,
    ) -> None:
        if max_bytes < 1:
            raise ValueError("max_bytes must be >= 1")
        if keep_segments < 1:
            raise ValueError("keep_segments must be >= 1")
        self._directory = directory
        self._max_bytes = max_bytes
        self._keep = keep_segments

    @property
    def current(self) -> Path:
        return self._directory / EVENT_LOG_NAME

    def segment(self, index: int) -> Path:
        return self._directory / f"{EVENT_LOG_NAME}.{index}"

    def segments(self) -> list[Path]:
        """Existing segments, oldest first."""

        ordered = [self.segment(index) for index in range(self._keep, 0, -1)]
        ordered.append(self.current)
        return [path for path in ordered if path.exists()]

    def append(self, event: str, detail: str, *, now: datetime) -> EventRecord:
        self._directory.mkdir(parents=True, exist_ok=True)
        if self.current.exists() and self.current.stat().st_size > self._max_bytes:
            self.rotate()
        record = EventRecord(seq=self.last_seq() + 1, timestamp=now, event=event, detail=detail)
        line = (record.to_line() + "\n").encode("utf-8")
        fd = os.open(self.current, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        try:
            os.write(fd, line)
        finally:
            os.close(fd)
        return record

    def rotate(self) -> None:
        self.segment(self._keep).unlink(missing_ok=True)
        for index in range(self._keep - 1, 0, -1):
            source = self.segment(index)
            if source.exists():
                source.replace(self.segment(index + 1))
        if self.current.exists():
            self.current.replace(self.segment(1))

    def last_seq(self) -> int:
        for path in (self.current, self.segment(1)):
            record = _last_record(path)
            if record is not None:
                return record.seq
        return 0

    def records(self, *, limit: int | None = None) -> list[EventRecord]:
        collected: list[EventRecord] = []
        for path in self.segments():
            collected.extend(_iter_records(path))
        if limit is not None:
            return collected[-limit:] if limit > 0 else []
        return collected


class OperationStore:
    """Filesystem-backed operation documents under ``<state_dir>/operations``."""

    def __init__(
        self,
        state_dir: Path | str,
        *,
        migrator: DocumentMigrator | None = None,
        event_log_max_bytes: int = DEFAULT_EVENT_LOG_MAX_BYTES,
        event_log_keep_segments: int = DEFAULT_EVENT_LOG_KEEP_SEGMENTS,
        lock_attempts: int = DEFAULT_LOCK_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._root = Path(state_dir) / OPERATIONS_DIRNAME
        self._migrator = migrator if migrator is not None else DocumentMigrator()
        self._migrator.bind_blocker_lookup(self._external_ref_of)
        self._event_log_max_bytes = event_log_max_bytes
        self._event_log_keep = event_log_keep_segments
        self._lock_attempts = lock_attempts
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    def now(self) -> datetime:
        return self._clock()

    def operation_dir(self, name: str) -> Path:
        return self._root / validate_operation_name(name)

    def document_path(self, name: str) -> Path:
        return self.operation_dir(name) / OPERATION_DOCUMENT_NAME

    def event_log(self, name: str) -> EventLog:
        return EventLog(
            self.operation_dir(name) / "logs",
            max_bytes=self._event_log_max_bytes,
            keep_segments=self._event_log_keep,
        )

    def exists(self, name: str) -> bool:
        try:
            return self.document_path(name).is_file()
        except ValidationError:
            return False

    def names(self) -> list[str]:
        if not self._root.is_dir():
            return []
        return sorted(
            child.name
            for child in self._root.iterdir()
            if (child / OPERATION_DOCUMENT_NAME).is_file()
        )

    def create(
        self,
        name: str,
        *,
        op_type: OperationType | str,
        external_ref: str | None = None,
        branch: str | None = None,
        worktree_path: str | None = None,
    ) -> Operation:
        """Create ``name`` at ``init``; a terminal operation may be recreated."""

        now = self._clock()
        with self._document_lock(name):
            if self.document_path(name).exists():
                phase = self._read_raw(name).get("phase")
                if phase not in {Phase.MERGED.value, Phase.CANCELLED.value}:
                    raise ValidationError(f"operation {name} already exists in phase {phase}")
            operation = Operation(
                name=validate_operation_name(name),
                type=OperationType(op_type),
                phase=Phase.INIT,
                created_at=now,
                updated_at=now,
                schema_version=OPERATION_SCHEMA_VERSION,
                external_ref=external_ref,
                worktree_path=worktree_path,
                branch=branch,
            )
            self._write_raw(name, operation.to_dict())
            self.event_log(name).append(
                EventType.OPERATION_CREATED.value, f"type={operation.type.value}", now=now
            )
        self._logger.info("operation_created", op=name, op_type=operation.type.value)
        return operation

    def read_document(self, name: str) -> Document:
        document = self._read_raw(name)
        if self._migrator.needs_migration(document):
            document = self._migrate(name)
        return document

    def load(self, name: str) -> Operation:
        document = self.read_document(name)
        try:
            return Operation.from_dict(document)
        except ValidationError as exc:
            raise StateStoreError(f"corrupt operation document {name}: {exc}") from exc

    def load_all(self) -> list[Operation]:
        return [self.load(name) for name in self.names()]

    def read(self, name: str, *field_names: str) -> tuple[object, ...]:
        """Read several fields in one pass; absent fields read as ``None``."""

        _validate_fields(field_names)
        document = self.read_document(name)
        return tuple(document.get(field) for field in field_names)

    def write(self, name: str, field: str, value: object) -> Document:
        return self.bulk_write(name, {field: value})

    def bulk_write(self, name: str, updates: Mapping[str, object]) -> Document:
        _validate_fields(updates)
        document, _ = self.apply(name, lambda _current: DocumentChange(updates=updates))
        return document

    def apply(
        self,
        name: str,
        decide: Callable[[Document], DocumentChange | None],
    ) -> tuple[Document, DocumentChange | None]:
        """
        Compare-and-set update.

        ``decide`` sees the current document under the lock and returns the change to
        write, or ``None`` to leave the document untouched.
        """

        with self._document_lock(name):
            current = self._read_raw(name)
            if self._migrator.needs_migration(current):
                current = self._migrate_locked(name, current)
            change = decide(dict(current))
            if change is None:
                return current, None
            if not change.updates and not change.events:
                return current, change
            _validate_fields(change.updates)
            now = self._clock()
            updated = dict(current)
            for key, value in change.updates.items():
                updated[key] = _to_document_value(value)
            updated["updated_at"] = to_iso8601z(now)
            try:
                Operation.from_dict(updated)
            except ValidationError as exc:
                raise ValidationError(f"rejected update for {name}: {exc}") from exc
            self._write_raw(name, updated)
            log = self.event_log(name)
            for event, detail in change.events:
                log.append(event, detail, now=now)
            return updated, change

    def append_event(self, name: str, event: EventType | str, detail: str) -> EventRecord:
        if not self.exists(name):
            raise UnknownOperationError(name)
        with self._document_lock(name):
            return self.event_log(name).append(str(event), detail, now=self._clock())

    def read_events(self, name: str, *, limit: int | None = None) -> list[EventRecord]:
        if not self.exists(name):
            raise UnknownOperationError(name)
        return self.event_log(name).records(limit=limit)

    def iter_documents(self) -> Iterator[tuple[str, Document]]:
        for name in self.names():
            yield name, self.read_document(name)

    def _external_ref_of(self, name: str) -> str | None:
        try:
            document = self._read_raw(name)
        except (UnknownOperationError, StateStoreError):
            return None
        value = document.get("external_ref", document.get("epic_id"))
        return value if isinstance(value, str) and value else None

    def _migrate(self, name: str) -> Document:
        with self._document_lock(name):
            current = self._read_raw(name)
            if not self._migrator.needs_migration(current):
                return current
            return self._migrate_locked(name, current)

    def _migrate_locked(self, name: str, current: Document) -> Document:
        now = self._clock()
        outcome = self._migrator.migrate(current, now=now)
        document = dict(outcome.document)
        document["updated_at"] = to_iso8601z(now)
        self._write_raw(name, document)
        log = self.event_log(name)
        for event, detail in outcome.events:
            log.append(event, detail, now=now)
        return document

    def _document_lock(self, name: str) -> FileLock:
        return FileLock(
            self.document_path(name).with_suffix(".json.lock"),
            label=f"operation {name}",
            attempts=self._lock_attempts,
            initial_delay_seconds=_DOCUMENT_LOCK_DELAY_SECONDS,
            logger=self._logger,
        )

    def _read_raw(self, name: str) -> Document:
        path = self.document_path(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise UnknownOperationError(name) from exc
        except OSError as exc:
            raise StateStoreError(f"cannot read {path}: {exc}") from exc
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"invalid JSON in {path}: {exc}") from exc
        if not isinstance(parsed, dict):
            raise StateStoreError(f"{path}: JSON root must be an object")
        return parsed

    def _write_raw(self, name: str, document: Mapping[str, object]) -> None:
        path = self.document_path(name)
        try:
            atomic_write_json(path, document)
        except OSError as exc:
            raise StateStoreError(f"cannot write {path}: {exc}") from exc


def _validate_fields(field_names: Sequence[str] | Mapping[str, object]) -> None:
    unknown = sorted(str(field) for field in field_names if field not in OPERATION_FIELDS)
    if unknown:
        raise ValidationError(f"unknown operation fields: {unknown}")


def _to_document_value(value: object) -> object:
    if isinstance(value, datetime):
        return to_iso8601z(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, PurePath):
        return str(value)
    return value


def _last_record(path: Path) -> EventRecord | None:
    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            handle.seek(max(0, size - _TAIL_WINDOW_BYTES))
            tail = handle.read().decode("utf-8", errors="replace")
    except FileNotFoundError:
        return None
    for line in reversed(tail.splitlines()):
        if not line.strip():
            continue
        try:
            return EventRecord.from_line(line)
        except ValidationError:
            continue
    return None


def _iter_records(path: Path) -> Iterator[EventRecord]:
    with path.open(encoding="utf-8", errors="replace") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped:
                continue
            try:
                yield EventRecord.from_line(stripped)
            except ValidationError:
                continue


__all__ = ["Document", "DocumentChange", "EventLog", "OperationStore"]
