"""
trunkline — operation document migrations

File: src/trunkline/persistence/migrations.py
Last updated: 2026-10-19

Purpose
- Version-tagged transforms that bring an operation document up to the current schema.

Functional requirements
- v0 -> v1: stamp ``schema_version``/``migrated_at`` and rename legacy field aliases.
- v1 -> v2: replace the field-based ``after`` dependency with a tracker edge, unwind the
  legacy ``blocked`` phase, and drop fields outside the fixed field set.
- Transforms are idempotent: a document already at the current version is returned unchanged.
- Tracker failures are recorded as ``migration:dep_failed`` events and never abort migration.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import OPERATION_SCHEMA_VERSION
from trunkline.domain.errors import TrunklineError
from trunkline.domain.events import EventType
from trunkline.domain.models import OPERATION_FIELDS, Phase, to_iso8601z

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from trunkline.domain.ports import IssueTracker

LEGACY_ALIASES: Final[dict[str, str]] = {
    "_schema_version": "schema_version",
    "_migrated_at": "migrated_at",
    "epic_id": "external_ref",
    "worktree": "worktree_path",
    "tmux_session": "session",
}
_LEGACY_BLOCKED_PHASE: Final[str] = "blocked"
_DROPPED_V2_FIELDS: Final[tuple[str, ...]] = ("after", "blocked_phase", "eager")


@dataclass(frozen=True, slots=True)
class MigrationOutcome:
    document: dict[str, object]
    from_version: int
    to_version: int
    events: tuple[tuple[str, str], ...] = ()

    @property
    def changed(self) -> bool:
        return self.from_version != self.to_version


@dataclass(slots=True)
class _StepContext:
    now: datetime
    events: list[tuple[str, str]]


def document_version(document: dict[str, object]) -> int:
    raw = document.get("schema_version", document.get("_schema_version", 0))
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        return 0
    return raw


class DocumentMigrator:
    """Applies registered steps in version order until the current schema is reached."""

    def __init__(
        self,
        tracker: IssueTracker | None = None,
        *,
        blocker_lookup: Callable[[str], str | None] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._tracker = tracker
        self._blocker_lookup = blocker_lookup
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._steps: dict[int, Callable[[dict[str, object], _StepContext], None]] = {
            0: self._v0_to_v1,
            1: self._v1_to_v2,
        }

    def bind_blocker_lookup(self, lookup: Callable[[str], str | None]) -> None:
        if self._blocker_lookup is None:
            self._blocker_lookup = lookup

    def needs_migration(self, document: dict[str, object]) -> bool:
        return document_version(document) < OPERATION_SCHEMA_VERSION

    def migrate(self, document: dict[str, object], *, now: datetime) -> MigrationOutcome:
        start = document_version(document)
        if start >= OPERATION_SCHEMA_VERSION:
            return MigrationOutcome(document=document, from_version=start, to_version=start)

        working = copy.deepcopy(document)
        context = _StepContext(now=now, events=[])
        version = start
        while version < OPERATION_SCHEMA_VERSION:
            step = self._steps.get(version)
            if step is None:
                raise TrunklineError(f"no migration registered from schema version {version}")
            step(working, context)
            version += 1
            working["schema_version"] = version

        context.events.append(
            (EventType.SCHEMA_MIGRATED.value, f"v{start} -> v{OPERATION_SCHEMA_VERSION}")
        )
        self._logger.info(
            "operation_schema_migrated",
            op=working.get("name"),
            from_version=start,
            to_version=OPERATION_SCHEMA_VERSION,
        )
        return MigrationOutcome(
            document=working,
            from_version=start,
            to_version=OPERATION_SCHEMA_VERSION,
            events=tuple(context.events),
        )

    def _v0_to_v1(self, document: dict[str, object], context: _StepContext) -> None:
        for legacy, current in LEGACY_ALIASES.items():
            if legacy not in document:
                continue
            value = document.pop(legacy)
            document.setdefault(current, value)
        document["migrated_at"] = to_iso8601z(context.now)

    def _v1_to_v2(self, document: dict[str, object], context: _StepContext) -> None:
        after = document.get("after")
        if isinstance(after, str) and after.strip():
            self._register_dependency(document, after.strip(), context)

        if document.get("phase") == _LEGACY_BLOCKED_PHASE:
            restored = document.get("blocked_phase")
            valid = {phase.value for phase in Phase}
            document["phase"] = restored if restored in valid else Phase.INIT.value

        for field in _DROPPED_V2_FIELDS:
            document.pop(field, None)

        unknown = sorted(key for key in document if key not in OPERATION_FIELDS)
        if unknown:
            self._logger.warning(
                "operation_fields_dropped", op=document.get("name"), fields=unknown
            )
            for key in unknown:
                document.pop(key)
        document["migrated_at"] = to_iso8601z(context.now)

    def _register_dependency(
        self, document: dict[str, object], after: str, context: _StepContext
    ) -> None:
        external_ref = document.get("external_ref")
        if not isinstance(external_ref, str) or not external_ref:
            context.events.append(
                (EventType.MIGRATION_DEP_FAILED.value, f"after={after}: no external_ref")
            )
            return
        if self._tracker is None:
            context.events.append(
                (EventType.MIGRATION_DEP_FAILED.value, f"after={after}: no issue tracker")
            )
            return

        blocker = self._blocker_lookup(after) if self._blocker_lookup is not None else None
        blocker_ref = blocker or after
        try:
            self._tracker.add_blocked_by(external_ref, [blocker_ref])
        except TrunklineError as exc:
            self._logger.warning(
                "migration_dependency_failed",
                op=document.get("name"),
                blocker=blocker_ref,
                error=str(exc),
            )
            detail = f"{external_ref} blocked-by {blocker_ref}: {exc}"
            context.events.append((EventType.MIGRATION_DEP_FAILED.value, detail))
            return
        context.events.append(
            (EventType.MIGRATION_DEP_ADDED.value, f"{external_ref} blocked-by {blocker_ref}")
        )


__all__ = [
    "LEGACY_ALIASES",
    "DocumentMigrator",
    "MigrationOutcome",
    "document_version",
]
