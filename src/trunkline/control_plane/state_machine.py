"""
trunkline — operation state machine

File: src/trunkline/control_plane/state_machine.py
Last updated: 2026-10-19

Purpose
- Named, guarded phase transitions over the operation store, plus the hold flag,
  tracker-backed blocking queries, and dependent notification on merge.

What should be included in this file
- The allowed-successor table and ``TransitionResult``.
- One method per lifecycle step so callers never patch phase fields directly.

Functional requirements
- A transition checks the current phase against the allowed predecessors inside the
  store's compare-and-set; a rejected transition leaves the document byte-identical.
- Guard failures are returned, never raised, and always name the failing guard.
- ``held`` is a side flag; setting or clearing it never changes ``phase``.
- Merging notifies dependents but never resumes them.

Non-functional requirements
- Tracker failures are logged and recorded as events; they never undo a transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import PLAN_LABEL_PREFIX
from trunkline.domain.errors import TrunklineError, UnknownOperationError
from trunkline.domain.events import EventType
from trunkline.domain.models import (
    MERGE_READY_PHASES,
    MergeStatus,
    Operation,
    Phase,
)
from trunkline.domain.ports import IssueStatus
from trunkline.persistence.operation_store import Document, DocumentChange

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from trunkline.domain.ports import IssueTracker
    from trunkline.persistence.operation_store import OperationStore

ALLOWED_TRANSITIONS: Final[Mapping[Phase, frozenset[Phase]]] = MappingProxyType(
    {
        Phase.INIT: frozenset({Phase.PLANNED, Phase.FAILED, Phase.CANCELLED}),
        Phase.PLANNED: frozenset({Phase.QUEUED, Phase.FAILED, Phase.CANCELLED}),
        Phase.QUEUED: frozenset({Phase.EXECUTING, Phase.FAILED, Phase.CANCELLED}),
        Phase.EXECUTING: frozenset(
            {Phase.COMPLETED, Phase.FAILED, Phase.INTERRUPTED, Phase.CANCELLED}
        ),
        Phase.COMPLETED: frozenset({Phase.PENDING_MERGE, Phase.FAILED, Phase.CANCELLED}),
        Phase.PENDING_MERGE: frozenset(
            {Phase.MERGED, Phase.CONFLICT, Phase.FAILED, Phase.CANCELLED}
        ),
        Phase.CONFLICT: frozenset({Phase.PENDING_MERGE, Phase.FAILED, Phase.CANCELLED}),
        Phase.FAILED: frozenset({Phase.INIT, Phase.CANCELLED}),
        Phase.INTERRUPTED: frozenset({Phase.INIT, Phase.CANCELLED}),
        Phase.MERGED: frozenset(),
        Phase.CANCELLED: frozenset(),
    }
)

_TRANSITION_EVENTS: Final[Mapping[Phase, EventType]] = MappingProxyType(
    {
        Phase.INIT: EventType.RESUME_FROM_ERROR,
        Phase.PLANNED: EventType.PLAN_CREATED,
        Phase.QUEUED: EventType.WORK_QUEUED,
        Phase.EXECUTING: EventType.AGENT_LAUNCHED,
        Phase.COMPLETED: EventType.WORK_COMPLETED,
        Phase.PENDING_MERGE: EventType.MERGE_PENDING,
        Phase.MERGED: EventType.MERGE_COMPLETED,
        Phase.CONFLICT: EventType.MERGE_CONFLICT,
        Phase.FAILED: EventType.ERROR_FAILED,
        Phase.INTERRUPTED: EventType.WORK_INTERRUPTED,
        Phase.CANCELLED: EventType.OPERATION_CANCELLED,
    }
)


def can_transition(current: Phase, target: Phase) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Outcome of a guarded transition; ``reason`` names the failing guard."""

    ok: bool
    op: str
    from_phase: Phase | None
    to_phase: Phase | None
    reason: str | None = None
    changed: bool = True

    @classmethod
    def rejected(
        cls, op: str, from_phase: Phase | None, to_phase: Phase | None, reason: str
    ) -> TransitionResult:
        return cls(
            ok=False,
            op=op,
            from_phase=from_phase,
            to_phase=to_phase,
            reason=reason,
            changed=False,
        )

    def describe(self) -> str:
        if self.ok:
            target = self.to_phase.value if self.to_phase is not None else "-"
            return f"{self.op}: {target}" + ("" if self.changed else " (unchanged)")
        return f"{self.op}: rejected ({self.reason})"


@dataclass(frozen=True, slots=True)
class Blocker:
    ref: str
    label: str
    status: IssueStatus


class StateMachine:
    """Guarded lifecycle operations for one project's operation store."""

    def __init__(
        self,
        store: OperationStore,
        *,
        tracker: IssueTracker | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def store(self) -> OperationStore:
        return self._store

    @property
    def tracker(self) -> IssueTracker | None:
        return self._tracker

    def transition(
        self,
        name: str,
        target: Phase | str,
        *,
        detail: str | None = None,
        updates: Mapping[str, object] | None = None,
    ) -> TransitionResult:
        """Move ``name`` to ``target`` if the current phase allows it."""

        target_phase = Phase(target)
        observed: list[Phase] = []

        def decide(document: Document) -> DocumentChange | None:
            current = Phase(str(document["phase"]))
            observed.append(current)
            if not can_transition(current, target_phase):
                return None
            fields: dict[str, object] = {"phase": target_phase}
            fields.update(self._side_fields(target_phase, detail))
            if updates:
                fields.update(updates)
            event = _TRANSITION_EVENTS[target_phase]
            text = detail if detail else f"{current.value} -> {target_phase.value}"
            return DocumentChange(updates=fields, events=((event.value, text),))

        try:
            _, change = self._store.apply(name, decide)
        except UnknownOperationError:
            return TransitionResult.rejected(name, None, target_phase, "operation:unknown")

        current = observed[-1] if observed else None
        if change is None:
            reason = f"phase:{current.value}" if current is not None else "phase:unknown"
            self._logger.info(
                "transition_rejected",
                op=name,
                phase=current.value if current else None,
                target=target_phase.value,
                reason=reason,
            )
            return TransitionResult.rejected(name, current, target_phase, reason)

        self._logger.info(
            "transition_applied",
            op=name,
            phase=current.value if current else None,
            target=target_phase.value,
        )
        return TransitionResult(ok=True, op=name, from_phase=current, to_phase=target_phase)

    def plan(self, name: str, plan_file: str | None = None) -> TransitionResult:
        updates = {"plan_file": plan_file} if plan_file else None
        return self.transition(name, Phase.PLANNED, detail=plan_file, updates=updates)

    def queue_work(self, name: str, external_ref: str | None = None) -> TransitionResult:
        updates = {"external_ref": external_ref} if external_ref else None
        return self.transition(name, Phase.QUEUED, detail=external_ref, updates=updates)

    def start_execution(self, name: str, session: str | None = None) -> TransitionResult:
        updates = {"session": session} if session else None
        return self.transition(name, Phase.EXECUTING, detail=session, updates=updates)

    def complete(self, name: str) -> TransitionResult:
        return self.transition(name, Phase.COMPLETED)

    def interrupt(self, name: str, reason: str | None = None) -> TransitionResult:
        return self.transition(name, Phase.INTERRUPTED, detail=reason)

    def fail(self, name: str, error: str) -> TransitionResult:
        return self.transition(name, Phase.FAILED, detail=error)

    def enter_pending_merge(self, name: str) -> TransitionResult:
        """Ensure ``name`` sits in ``pending_merge`` with ``merge_status=merging``."""

        def decide(document: Document) -> DocumentChange | None:
            current = Phase(str(document["phase"]))
            if current not in MERGE_READY_PHASES:
                return None
            return DocumentChange(
                updates={
                    "phase": Phase.PENDING_MERGE,
                    "merge_status": MergeStatus.MERGING,
                    "merge_error": None,
                },
                events=((EventType.MERGE_STARTED.value, f"from {current.value}"),),
            )

        return self._apply_flag(name, decide, Phase.PENDING_MERGE)

    def mark_conflict(self, name: str, detail: str | None = None) -> TransitionResult:
        updates = {"merge_error": detail} if detail else None
        return self.transition(name, Phase.CONFLICT, detail=detail, updates=updates)

    def mark_merged(self, name: str, *, merge_commit: str | None = None) -> TransitionResult:
        """Transition to ``merged``; already-merged operations are left as they are."""

        current = self._store.load(name)
        if current.phase is Phase.MERGED:
            return TransitionResult(
                ok=True,
                op=name,
                from_phase=Phase.MERGED,
                to_phase=Phase.MERGED,
                changed=False,
            )
        updates: dict[str, object] = {"merge_queued": False, "merge_error": None}
        if merge_commit is not None:
            updates["merge_commit"] = merge_commit
        result = self.transition(name, Phase.MERGED, detail=merge_commit, updates=updates)
        if not result.ok:
            return result

        merged = self._store.load(name)
        self._close_tracker_items(merged)
        self.notify_dependents(name)
        return result

    def record_merge_commit(self, name: str, commit: str) -> None:
        self._store.bulk_write(name, {"merge_commit": commit})
        self._logger.info("merge_commit_recorded", op=name, commit=commit)

    def record_verification_failure(self, name: str, message: str) -> TransitionResult:
        return self.transition(
            name,
            Phase.FAILED,
            detail=message,
            updates={"merge_status": MergeStatus.VERIFICATION_FAILED, "merge_error": message},
        )

    def retry_conflict(self, name: str) -> TransitionResult:
        """One automatic retry: ``conflict -> pending_merge`` guarded by ``conflict_retried``."""

        def decide(document: Document) -> DocumentChange | None:
            if document.get("conflict_retried"):
                return None
            if Phase(str(document["phase"])) is not Phase.CONFLICT:
                return None
            return DocumentChange(
                updates={
                    "phase": Phase.PENDING_MERGE,
                    "conflict_retried": True,
                    "merge_status": None,
                    "merge_error": None,
                },
                events=((EventType.MERGE_RETRY.value, "automatic conflict retry"),),
            )

        return self._apply_flag(
            name, decide, Phase.PENDING_MERGE, reject_reason=_retry_reject_reason
        )

    def request_merge(self, name: str) -> TransitionResult:
        def decide(document: Document) -> DocumentChange | None:
            if Phase(str(document["phase"])) in {Phase.MERGED, Phase.CANCELLED}:
                return None
            if document.get("merge_queued"):
                return DocumentChange(updates={})
            return DocumentChange(
                updates={"merge_queued": True, "merge_resumed": False},
                events=((EventType.MERGE_QUEUED.value, "queued for integration"),),
            )

        return self._apply_flag(name, decide, None)

    def mark_auto_resumed(self, name: str, detail: str) -> TransitionResult:
        def decide(document: Document) -> DocumentChange | None:
            if document.get("merge_resumed"):
                return None
            return DocumentChange(
                updates={"merge_resumed": True, "merge_queued": False},
                events=((EventType.MERGE_AUTO_RESUME.value, detail),),
            )

        return self._apply_flag(name, decide, None, reject_reason=lambda _doc: "resumed:already")

    def mark_worktree_missing(self, name: str, detail: str) -> TransitionResult:
        def decide(document: Document) -> DocumentChange | None:
            if document.get("worktree_missing"):
                return None
            return DocumentChange(
                updates={"worktree_missing": True},
                events=((EventType.MERGE_WORKTREE_MISSING.value, detail),),
            )

        return self._apply_flag(name, decide, None, reject_reason=lambda _doc: "flag:already_set")

    def cancel(self, name: str, reason: str | None = None) -> TransitionResult:
        return self.transition(name, Phase.CANCELLED, detail=reason)

    def resume(self, name: str) -> TransitionResult:
        """Restart a failed/interrupted operation from ``init``, or clear a hold."""

        operation = self._store.load(name)
        if operation.phase in {Phase.FAILED, Phase.INTERRUPTED}:
            return self.transition(
                name,
                Phase.INIT,
                detail=f"resumed from {operation.phase.value}",
                updates={"held": False, "held_at": None},
            )
        if operation.held:
            return self.unhold(name)
        return TransitionResult.rejected(
            name, operation.phase, None, f"phase:{operation.phase.value}"
        )

    def hold(self, name: str) -> TransitionResult:
        def decide(document: Document) -> DocumentChange | None:
            if Phase(str(document["phase"])) in {Phase.MERGED, Phase.CANCELLED}:
                return None
            if document.get("held"):
                return DocumentChange(updates={})
            return DocumentChange(
                updates={"held": True, "held_at": self._store.now()},
                events=((EventType.HOLD_SET.value, f"held in {document['phase']}"),),
            )

        return self._apply_flag(name, decide, None)

    def unhold(self, name: str) -> TransitionResult:
        def decide(document: Document) -> DocumentChange | None:
            if not document.get("held"):
                return DocumentChange(updates={})
            return DocumentChange(
                updates={"held": False, "held_at": None},
                events=((EventType.HOLD_CLEARED.value, f"released in {document['phase']}"),),
            )

        return self._apply_flag(name, decide, None)

    def is_held(self, name: str) -> bool:
        (held,) = self._store.read(name, "held")
        return bool(held)

    def blockers(self, name: str) -> list[Blocker]:
        """Open blocking dependencies of ``name`` as recorded by the tracker."""

        (external_ref,) = self._store.read(name, "external_ref")
        if self._tracker is None or not isinstance(external_ref, str):
            return []
        found: list[Blocker] = []
        for ref in self._tracker.get_blockers(external_ref):
            status = self._tracker.get_status(ref)
            if status is IssueStatus.DONE:
                continue
            found.append(Blocker(ref=ref, label=self.blocker_label(ref), status=status))
        return found

    def is_blocked(self, name: str) -> bool:
        try:
            return bool(self.blockers(name))
        except TrunklineError as exc:
            self._logger.warning("blocker_query_failed", op=name, error=str(exc))
            return True

    def blocked_reason(self, name: str) -> str | None:
        found = self.blockers(name)
        if not found:
            return None
        return "blocked by " + ", ".join(blocker.label for blocker in found)

    def blocker_label(self, ref: str) -> str:
        if self._tracker is None:
            return ref
        try:
            label = self._tracker.resolve_label(ref)
        except TrunklineError:
            return ref
        return label or ref

    def find_dependents(self, name: str) -> list[str]:
        (external_ref,) = self._store.read(name, "external_ref")
        if not isinstance(external_ref, str):
            return []
        return self.dependents_of_ref(external_ref, exclude=name)

    def dependents_of_ref(self, ref: str, *, exclude: str | None = None) -> list[str]:
        if self._tracker is None:
            return []
        by_ref: dict[str, str] = {}
        for candidate in self._store.names():
            (candidate_ref,) = self._store.read(candidate, "external_ref")
            if isinstance(candidate_ref, str):
                by_ref[candidate_ref] = candidate

        dependents: list[str] = []
        for dependent_ref in self._tracker.find_blocking(ref):
            name = by_ref.get(dependent_ref)
            if name is None:
                label = self.blocker_label(dependent_ref)
                name = label if self._store.exists(label) else None
            if name is not None and name != exclude and name not in dependents:
                dependents.append(name)
        return dependents

    def notify_dependents(self, name: str) -> list[str]:
        (external_ref,) = self._store.read(name, "external_ref")
        if not isinstance(external_ref, str):
            return []
        return self.notify_dependents_of_ref(external_ref, source=name)

    def notify_dependents_of_ref(self, ref: str, *, source: str) -> list[str]:
        try:
            dependents = self.dependents_of_ref(ref, exclude=source)
        except TrunklineError as exc:
            self._logger.warning("dependent_query_failed", subject=source, error=str(exc))
            return []
        for dependent in dependents:
            self._store.append_event(
                dependent, EventType.UNBLOCK_NOTIFIED, f"blocker {source} merged"
            )
            self._logger.info("dependent_notified", op=dependent, subject=source)
        return dependents

    def close_external_ref(self, ref: str, *, source: str) -> None:
        if self._tracker is None:
            return
        try:
            self._tracker.close([ref], reason=f"merged: {source}")
        except TrunklineError as exc:
            self._logger.warning("tracker_close_failed", subject=source, ref=ref, error=str(exc))

    def _close_tracker_items(self, operation: Operation) -> None:
        if self._tracker is None:
            return
        refs: list[str] = []
        try:
            refs.extend(self._tracker.list_open(f"{PLAN_LABEL_PREFIX}{operation.name}"))
        except TrunklineError as exc:
            self._warn_tracker(operation.name, f"listing plan issues failed: {exc}")
        if operation.external_ref and operation.external_ref not in refs:
            refs.append(operation.external_ref)
        if not refs:
            return
        try:
            self._tracker.close(refs, reason=f"merged: {operation.name}")
        except TrunklineError as exc:
            self._warn_tracker(operation.name, f"closing {len(refs)} issue(s) failed: {exc}")

    def _warn_tracker(self, name: str, message: str) -> None:
        self._logger.warning("tracker_warning", op=name, reason=message)
        self._store.append_event(name, EventType.TRACKER_WARNING, message)

    def _side_fields(self, target: Phase, detail: str | None) -> dict[str, object]:
        now = self._store.now()
        if target is Phase.COMPLETED:
            return {"completed_at": now}
        if target is Phase.MERGED:
            return {"merged_at": now, "merge_status": MergeStatus.MERGED}
        if target is Phase.CONFLICT:
            return {"merge_status": MergeStatus.CONFLICT}
        if target is Phase.FAILED:
            return {"error": detail or "failed"}
        if target is Phase.CANCELLED:
            return {"cancelled_at": now, "held": False, "held_at": None}
        if target is Phase.INIT:
            return {
                "error": None,
                "merge_status": None,
                "merge_error": None,
                "merge_commit": None,
                "merge_queued": False,
                "merge_resumed": False,
                "conflict_retried": False,
                "worktree_missing": False,
            }
        return {}

    def _apply_flag(
        self,
        name: str,
        decide: Callable[[Document], DocumentChange | None],
        target: Phase | None,
        *,
        reject_reason: Callable[[Document], str] | None = None,
    ) -> TransitionResult:
        observed: list[Document] = []

        def wrapped(document: Document) -> DocumentChange | None:
            observed.append(document)
            return decide(document)

        try:
            _, change = self._store.apply(name, wrapped)
        except UnknownOperationError:
            return TransitionResult.rejected(name, None, target, "operation:unknown")

        document = observed[-1] if observed else {}
        phase = Phase(str(document["phase"])) if "phase" in document else None
        if change is None:
            reason = (
                reject_reason(document)
                if reject_reason is not None
                else f"phase:{phase.value if phase else 'unknown'}"
            )
            return TransitionResult.rejected(name, phase, target, reason)
        return TransitionResult(
            ok=True,
            op=name,
            from_phase=phase,
            to_phase=target if target is not None else phase,
            changed=bool(change.updates),
        )


def _retry_reject_reason(document: Document) -> str:
    if document.get("conflict_retried"):
        return "conflict:already_retried"
    return f"phase:{document.get('phase')}"


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Blocker",
    "StateMachine",
    "TransitionResult",
    "can_transition",
]
