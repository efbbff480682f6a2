"""
trunkline — merge queue store

File: src/trunkline/persistence/queue_store.py
Last updated: 2026-10-19

Purpose
- The single durable document holding every integration request of a project.

What should be included in this file
- Lock-free snapshots for readers and a locked transaction for writers.
- Enqueue / re-enqueue, claim, status updates, removal, history, stuck-entry recovery.

Functional requirements
- Mutations happen only while holding ``queue.lock`` (stale owners are reclaimed).
- At most one entry is ``processing``; a transaction that would break this is rejected
  before anything is written.
- Enqueueing an active entry is a no-op; enqueueing an inactive one resets it to pending.

Non-functional requirements
- Document writes are atomic replacements with canonical JSON.
"""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import (
    DEFAULT_LOCK_ATTEMPTS,
    DEFAULT_LOCK_INITIAL_DELAY_SECONDS,
    QUEUE_DIRNAME,
    QUEUE_DOCUMENT_NAME,
    QUEUE_LOCK_NAME,
    QUEUE_SCHEMA_VERSION,
)
from trunkline.domain.errors import (
    QueueInvariantError,
    StateStoreError,
    UnknownQueueEntryError,
    ValidationError,
)
from trunkline.domain.models import (
    EntryKind,
    QueueEntry,
    QueueStatus,
    utc_now,
    validate_subject,
)
from trunkline.persistence.locks import FileLock
from trunkline.utils.fs import atomic_write_json

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator
    from datetime import datetime

_REQUIRED_STATE_KEYS: Final[tuple[str, ...]] = ("entries",)


class EnqueueAction(StrEnum):
    ADDED = "added"
    REENQUEUED = "reenqueued"
    ALREADY_QUEUED = "already_queued"


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    action: EnqueueAction
    entry: QueueEntry


@dataclass(frozen=True, slots=True)
class QueueSnapshot:
    """Immutable view of the queue document at one instant."""

    entries: tuple[QueueEntry, ...] = ()

    def get(self, subject: str) -> QueueEntry | None:
        for entry in self.entries:
            if entry.subject == subject:
                return entry
        return None

    def with_status(self, status: QueueStatus) -> tuple[QueueEntry, ...]:
        return tuple(entry for entry in self.entries if entry.status is status)

    def pending(self) -> tuple[QueueEntry, ...]:
        """Pending entries in dispatch order ``(priority, enqueued_at)``."""

        return tuple(sorted(self.with_status(QueueStatus.PENDING), key=lambda e: e.sort_key))

    def processing(self) -> QueueEntry | None:
        active = self.with_status(QueueStatus.PROCESSING)
        return active[0] if active else None

    def history(self, limit: int | None = None) -> tuple[QueueEntry, ...]:
        terminal = sorted(
            (entry for entry in self.entries if entry.is_terminal),
            key=lambda entry: entry.updated_at,
            reverse=True,
        )
        return tuple(terminal if limit is None else terminal[:limit])


class QueueTransaction:
    """Mutable working copy of the queue used inside ``QueueStore.transaction``."""

    def __init__(self, entries: Iterable[QueueEntry], *, now: datetime) -> None:
        self._entries: dict[str, QueueEntry] = {entry.subject: entry for entry in entries}
        self.now = now
        self.dirty = False

    def get(self, subject: str) -> QueueEntry | None:
        return self._entries.get(subject)

    def require(self, subject: str) -> QueueEntry:
        entry = self._entries.get(subject)
        if entry is None:
            raise UnknownQueueEntryError(subject)
        return entry

    def put(self, entry: QueueEntry) -> QueueEntry:
        self._entries[entry.subject] = entry
        self.dirty = True
        return entry

    def remove(self, subject: str) -> QueueEntry:
        entry = self.require(subject)
        del self._entries[subject]
        self.dirty = True
        return entry

    def processing(self) -> list[QueueEntry]:
        return [e for e in self._entries.values() if e.status is QueueStatus.PROCESSING]

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(entries=tuple(self._entries.values()))


class QueueStore:
    """Filesystem-backed queue document under ``<state_dir>/mergeq``."""

    def __init__(
        self,
        state_dir: Path | str,
        *,
        lock_attempts: int = DEFAULT_LOCK_ATTEMPTS,
        lock_initial_delay_seconds: float = DEFAULT_LOCK_INITIAL_DELAY_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        logger: Any | None = None,
    ) -> None:
        self._directory = Path(state_dir) / QUEUE_DIRNAME
        self._lock_attempts = lock_attempts
        self._lock_delay = lock_initial_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def path(self) -> Path:
        return self._directory / QUEUE_DOCUMENT_NAME

    @property
    def lock_path(self) -> Path:
        return self._directory / QUEUE_LOCK_NAME

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(entries=tuple(self._load_entries()))

    @contextmanager
    def transaction(self) -> Iterator[QueueTransaction]:
        lock = FileLock(
            self.lock_path,
            label="mergeq",
            attempts=self._lock_attempts,
            initial_delay_seconds=self._lock_delay,
            sleep=self._sleep,
            logger=self._logger,
        )
        with lock:
            txn = QueueTransaction(self._load_entries(), now=self._clock())
            yield txn
            if txn.dirty:
                if len(txn.processing()) > 1:
                    subjects = sorted(entry.subject for entry in txn.processing())
                    raise QueueInvariantError(f"more than one entry processing: {subjects}")
                self._persist(txn.snapshot().entries)

    def enqueue(
        self,
        subject: str,
        *,
        kind: EntryKind | str,
        priority: int = 0,
        external_ref: str | None = None,
    ) -> EnqueueResult:
        subject = validate_subject(subject)
        entry_kind = EntryKind(kind)
        with self.transaction() as txn:
            existing = txn.get(subject)
            if existing is not None and existing.is_active:
                return EnqueueResult(action=EnqueueAction.ALREADY_QUEUED, entry=existing)
            entry = QueueEntry(
                subject=subject,
                kind=entry_kind,
                priority=priority,
                enqueued_at=txn.now,
                updated_at=txn.now,
                status=QueueStatus.PENDING,
                external_ref=external_ref
                if external_ref is not None
                else (existing.external_ref if existing is not None else None),
            )
            txn.put(entry)
        action = EnqueueAction.ADDED if existing is None else EnqueueAction.REENQUEUED
        self._logger.info(
            "queue_entry_enqueued",
            subject=subject,
            kind=entry_kind.value,
            priority=priority,
            action=action.value,
        )
        return EnqueueResult(action=action, entry=entry)

    def claim(self, subject: str) -> QueueEntry | None:
        """Move a pending entry to ``processing`` if nothing else is processing."""

        with self.transaction() as txn:
            entry = txn.require(subject)
            if entry.status is not QueueStatus.PENDING:
                return None
            if txn.processing():
                return None
            claimed = txn.put(entry.with_status(QueueStatus.PROCESSING, now=txn.now))
        self._logger.info("queue_entry_claimed", subject=subject)
        return claimed

    def set_status(
        self, subject: str, status: QueueStatus, *, note: str | None = None
    ) -> QueueEntry:
        with self.transaction() as txn:
            entry = txn.require(subject)
            if status is QueueStatus.PROCESSING and any(
                other.subject != subject for other in txn.processing()
            ):
                raise QueueInvariantError(f"another entry is already processing: {subject}")
            updated = txn.put(entry.with_status(status, now=txn.now, note=note))
        self._logger.info("queue_entry_status", subject=subject, status=status.value, note=note)
        return updated

    def remove(self, subject: str) -> QueueEntry:
        with self.transaction() as txn:
            entry = txn.require(subject)
            if entry.status is QueueStatus.PROCESSING:
                raise ValidationError(f"cannot remove {subject}: entry is processing")
            txn.remove(subject)
        self._logger.info("queue_entry_removed", subject=subject)
        return entry

    def recover_stuck_processing(self) -> list[str]:
        """Reset ``processing`` entries left behind by a dead daemon to ``pending``."""

        with self.transaction() as txn:
            stuck = txn.processing()
            for entry in stuck:
                txn.put(entry.with_status(QueueStatus.PENDING, now=txn.now, note="recovered"))
        subjects = [entry.subject for entry in stuck]
        if subjects:
            self._logger.warning("queue_processing_recovered", subjects=subjects)
        return subjects

    def history(self, limit: int | None = None) -> tuple[QueueEntry, ...]:
        return self.snapshot().history(limit)

    def _load_entries(self) -> list[QueueEntry]:
        if not self.path.exists():
            return []

        try:
            payload_raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateStoreError(f"failed to read queue file {self.path}: {exc}") from exc

        try:
            parsed = json.loads(payload_raw)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"invalid JSON in queue file {self.path}: {exc.msg}") from exc

        if not isinstance(parsed, dict):
            raise StateStoreError("queue file root must be an object")
        missing_keys = [key for key in _REQUIRED_STATE_KEYS if key not in parsed]
        if missing_keys:
            raise StateStoreError(f"queue file missing required keys: {', '.join(missing_keys)}")

        version = parsed.get("schema_version", parsed.get("version", QUEUE_SCHEMA_VERSION))
        if version != QUEUE_SCHEMA_VERSION:
            raise StateStoreError(
                f"unsupported queue schema version {version}; expected {QUEUE_SCHEMA_VERSION}"
            )

        entries_raw = parsed["entries"]
        if not isinstance(entries_raw, list):
            raise StateStoreError("queue file entries must be a list")

        loaded: list[QueueEntry] = []
        seen: set[str] = set()
        for item in entries_raw:
            try:
                entry = QueueEntry.from_dict(item)
            except ValidationError as exc:
                raise StateStoreError(f"invalid queue entry in {self.path}: {exc}") from exc
            if entry.subject in seen:
                raise StateStoreError(f"duplicate queue entry for {entry.subject}")
            seen.add(entry.subject)
            loaded.append(entry)
        return loaded

    def _persist(self, entries: Iterable[QueueEntry]) -> None:
        payload = {
            "schema_version": QUEUE_SCHEMA_VERSION,
            "entries": [entry.to_dict() for entry in entries],
        }
        try:
            atomic_write_json(self.path, payload)
        except OSError as exc:
            raise StateStoreError(f"failed to write queue file {self.path}: {exc}") from exc


__all__ = [
    "EnqueueAction",
    "EnqueueResult",
    "QueueSnapshot",
    "QueueStore",
    "QueueTransaction",
]
