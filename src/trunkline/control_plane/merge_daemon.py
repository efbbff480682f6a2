"""
trunkline — merge queue daemon

File: src/trunkline/control_plane/merge_daemon.py
Last updated: 2026-10-19

Purpose
- Decide what one poll cycle does (pure planner) and carry it out (cycle runner),
  plus the interval loop that runs cycles until stopped.

What should be included in this file
- ``EntryFacts`` gathered per entry, the ``CycleAction`` records and ``plan_cycle``.
- ``MergeDaemon`` applying a plan against the stores, executor and tracker.

Functional requirements
- Cycle order: conflict retry, stale sweep, readiness filter with auto-resume, dispatch.
- A conflict entry is retried once per operation, guarded by ``conflict_retried``.
- Stale entries: merged-and-verified operations complete; recreated or missing
  operations and bare branches gone from the remote are removed. A failed remote
  query never counts as a gone branch.
- At most one entry is dispatched per cycle and never while another is processing.
- The operation record is updated before the queue entry is marked terminal.

Non-functional requirements
- ``plan_cycle`` performs no I/O; the same snapshot and facts yield the same plan.
- Only state-store failures and unavailable locks abort a cycle; any other failure is
  confined to one entry. An aborted dispatch returns its claimed entry to pending.
- A queue entry completes only when the operation record accepted the merge.
"""

from __future__ import annotations

import shlex
import subprocess
import threading
import uuid
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_REMOTE
from trunkline.domain.errors import StateStoreError, TransientError, TrunklineError
from trunkline.domain.models import (
    EntryKind,
    MergeStatus,
    Operation,
    Phase,
    QueueStatus,
    utc_now,
)
from trunkline.integration_plane.merge_executor import MergeOutcome, MergeRequest, OutcomeStatus
from trunkline.observability import correlation_scope

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime

    from trunkline.control_plane.readiness import Readiness, ReadinessChecker
    from trunkline.control_plane.state_machine import StateMachine, TransitionResult
    from trunkline.domain.models import QueueEntry
    from trunkline.domain.ports import VersionControl
    from trunkline.integration_plane.merge_executor import MergeExecutor
    from trunkline.integration_plane.push_verification import PushVerifier
    from trunkline.persistence.queue_store import QueueSnapshot, QueueStore

RESUME_PLACEHOLDER: Final[str] = "{op}"


@dataclass(frozen=True, slots=True)
class EntryFacts:
    """Observations about one queue entry collected at the start of a cycle."""

    operation: Operation | None = None
    readiness: Readiness | None = None
    merged_verified: bool = False
    # None when the remote could not be queried.
    remote_branch_exists: bool | None = None


@dataclass(frozen=True, slots=True)
class RetryConflict:
    subject: str


@dataclass(frozen=True, slots=True)
class MarkStale:
    subject: str
    reason: str
    remove: bool


@dataclass(frozen=True, slots=True)
class AutoResume:
    subject: str
    detail: str


@dataclass(frozen=True, slots=True)
class MarkWorktreeMissing:
    subject: str
    detail: str


@dataclass(frozen=True, slots=True)
class Dispatch:
    subject: str


CycleAction = RetryConflict | MarkStale | AutoResume | MarkWorktreeMissing | Dispatch


@dataclass(frozen=True, slots=True)
class CyclePlan:
    planned_at: datetime
    actions: tuple[CycleAction, ...] = ()
    waiting: tuple[tuple[str, str], ...] = ()

    @property
    def dispatch(self) -> Dispatch | None:
        for action in self.actions:
            if isinstance(action, Dispatch):
                return action
        return None


@dataclass(frozen=True, slots=True)
class ActionRecord:
    action: str
    subject: str
    detail: str = ""

    def render(self) -> str:
        suffix = f": {self.detail}" if self.detail else ""
        return f"{self.action} {self.subject}{suffix}"


@dataclass(frozen=True, slots=True)
class CycleReport:
    cycle_id: str
    plan: CyclePlan
    records: tuple[ActionRecord, ...] = ()
    outcome: MergeOutcome | None = None


def plan_cycle(
    snapshot: QueueSnapshot,
    facts: Mapping[str, EntryFacts],
    now: datetime,
) -> CyclePlan:
    """Compute the actions of one poll cycle from a queue snapshot and per-entry facts."""

    actions: list[CycleAction] = []
    waiting: list[tuple[str, str]] = []

    for entry in sorted(snapshot.with_status(QueueStatus.CONFLICT), key=lambda e: e.sort_key):
        entry_facts = facts.get(entry.subject, EntryFacts())
        operation = entry_facts.operation
        if (
            operation is not None
            and operation.phase is Phase.CONFLICT
            and not operation.conflict_retried
        ):
            actions.append(RetryConflict(entry.subject))

    candidates: list[QueueEntry] = []
    for entry in snapshot.pending():
        entry_facts = facts.get(entry.subject, EntryFacts())
        stale = _stale_action(entry, entry_facts)
        if stale is not None:
            actions.append(stale)
            continue
        if entry.kind is EntryKind.BRANCH:
            candidates.append(entry)
            continue

        operation = entry_facts.operation
        readiness = entry_facts.readiness
        if operation is None or not operation.merge_queued:
            waiting.append((entry.subject, "merge_queued:false"))
            continue
        if readiness is None:
            waiting.append((entry.subject, "readiness:unknown"))
            continue
        if readiness.ready:
            candidates.append(entry)
            continue

        if readiness.guard == "open_issues" and not operation.merge_resumed:
            actions.append(AutoResume(entry.subject, readiness.detail))
        elif readiness.reason == "worktree:missing" and not operation.worktree_missing:
            actions.append(MarkWorktreeMissing(entry.subject, readiness.detail))
        waiting.append((entry.subject, readiness.reason))

    if candidates:
        busy = snapshot.processing()
        if busy is None:
            actions.append(Dispatch(candidates[0].subject))
            waiting.extend((entry.subject, "queue:behind") for entry in candidates[1:])
        else:
            waiting.extend((entry.subject, f"processing:{busy.subject}") for entry in candidates)

    return CyclePlan(planned_at=now, actions=tuple(actions), waiting=tuple(waiting))


def _stale_action(entry: QueueEntry, facts: EntryFacts) -> MarkStale | None:
    if entry.kind is EntryKind.BRANCH:
        if facts.remote_branch_exists is False:
            return MarkStale(entry.subject, "branch:gone", remove=True)
        return None

    operation = facts.operation
    if operation is None:
        return MarkStale(entry.subject, "operation:missing", remove=True)
    if operation.created_at > entry.enqueued_at:
        return MarkStale(entry.subject, "operation:recreated", remove=True)
    if operation.phase is Phase.MERGED and facts.merged_verified:
        return MarkStale(entry.subject, "merged:verified", remove=False)
    return None


class MergeDaemon:
    """Runs merge queue cycles against one project's stores and trunk checkout."""

    def __init__(
        self,
        queue: QueueStore,
        machine: StateMachine,
        readiness: ReadinessChecker,
        executor: MergeExecutor,
        verifier: PushVerifier,
        vcs: VersionControl,
        *,
        remote: str = DEFAULT_REMOTE,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        resume_command: str = "",
        workdir: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._queue = queue
        self._machine = machine
        self._readiness = readiness
        self._executor = executor
        self._verifier = verifier
        self._vcs = vcs
        self._remote = remote
        self._interval = poll_interval_seconds
        self._resume_command = resume_command.strip()
        self._workdir = workdir
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._stop = threading.Event()
        self._wake = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def wake(self) -> None:
        self._wake.set()

    def run(self, *, max_cycles: int | None = None) -> int:
        """Poll until stopped; returns the number of cycles run."""

        recovered = self._queue.recover_stuck_processing()
        self._logger.info(
            "daemon_started",
            poll_interval_seconds=self._interval,
            recovered=recovered,
        )
        cycles = 0
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except (StateStoreError, TransientError) as exc:
                self._logger.error("daemon_cycle_aborted", error=str(exc))
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            self._wake.wait(timeout=self._interval)
            self._wake.clear()
        self._logger.info("daemon_stopped", cycles=cycles)
        return cycles

    def run_cycle(self) -> CycleReport:
        cycle_id = uuid.uuid4().hex[:12]
        with correlation_scope(cycle_id=cycle_id):
            self._refresh_remote()
            snapshot = self._queue.snapshot()
            facts = self.gather_facts(snapshot)
            plan = plan_cycle(snapshot, facts, self._clock())
            self._logger.debug(
                "cycle_planned",
                actions=len(plan.actions),
                waiting=len(plan.waiting),
            )
            records: list[ActionRecord] = []
            outcome: MergeOutcome | None = None
            for action in plan.actions:
                if isinstance(action, Dispatch):
                    entry = snapshot.get(action.subject)
                    if entry is None:
                        continue
                    outcome, record = self._dispatch(entry, facts.get(action.subject))
                    records.append(record)
                else:
                    records.append(self._apply(action))
            self._logger.info(
                "cycle_completed",
                applied=len(records),
                dispatched=outcome.subject if outcome is not None else None,
                result=outcome.status.value if outcome is not None else None,
            )
            return CycleReport(
                cycle_id=cycle_id, plan=plan, records=tuple(records), outcome=outcome
            )

    def gather_facts(self, snapshot: QueueSnapshot) -> dict[str, EntryFacts]:
        facts: dict[str, EntryFacts] = {}
        for entry in snapshot.entries:
            if entry.status is QueueStatus.PENDING:
                facts[entry.subject] = self._pending_facts(entry)
            elif entry.status is QueueStatus.CONFLICT and entry.kind is EntryKind.OPERATION:
                facts[entry.subject] = EntryFacts(operation=self._load_operation(entry.subject))
        return facts

    def _pending_facts(self, entry: QueueEntry) -> EntryFacts:
        if entry.kind is EntryKind.BRANCH:
            return EntryFacts(remote_branch_exists=self._remote_branch_state(entry.subject))

        operation = self._load_operation(entry.subject)
        if operation is None:
            return EntryFacts()
        if operation.created_at > entry.enqueued_at:
            return EntryFacts(operation=operation)
        if operation.phase is Phase.MERGED:
            verified = self._verifier.verify_recorded(operation.merge_commit)
            return EntryFacts(operation=operation, merged_verified=verified)
        readiness = self._readiness.evaluate(operation) if operation.merge_queued else None
        return EntryFacts(operation=operation, readiness=readiness)

    def _load_operation(self, name: str) -> Operation | None:
        store = self._machine.store
        if not store.exists(name):
            return None
        return store.load(name)

    def _remote_branch_state(self, branch: str) -> bool | None:
        try:
            return self._vcs.ls_remote(self._remote, branch) is not None
        except TrunklineError as exc:
            self._logger.warning("remote_branch_query_failed", branch=branch, error=str(exc))
            return None

    def _refresh_remote(self) -> None:
        try:
            self._vcs.fetch(self._remote, prune=True)
        except TrunklineError as exc:
            self._logger.warning("cycle_fetch_failed", remote=self._remote, error=str(exc))

    def _apply(self, action: CycleAction) -> ActionRecord:
        if isinstance(action, RetryConflict):
            result = self._machine.retry_conflict(action.subject)
            if not result.ok:
                return ActionRecord("retry_skipped", action.subject, result.reason or "")
            self._queue.set_status(action.subject, QueueStatus.PENDING, note="automatic retry")
            self._logger.info("conflict_retry_scheduled", subject=action.subject)
            return ActionRecord("retry", action.subject, "automatic conflict retry")

        if isinstance(action, MarkStale):
            if action.remove:
                self._queue.remove(action.subject)
            else:
                self._queue.set_status(action.subject, QueueStatus.COMPLETED, note=action.reason)
            self._logger.info(
                "stale_entry_reconciled",
                subject=action.subject,
                reason=action.reason,
                removed=action.remove,
            )
            verb = "removed" if action.remove else "completed"
            return ActionRecord(verb, action.subject, action.reason)

        if isinstance(action, AutoResume):
            result = self._machine.mark_auto_resumed(action.subject, action.detail)
            if not result.ok:
                return ActionRecord("resume_skipped", action.subject, result.reason or "")
            self._queue.set_status(action.subject, QueueStatus.RESUMED, note=action.detail)
            self._spawn_resume(action.subject)
            return ActionRecord("resumed", action.subject, action.detail)

        if isinstance(action, MarkWorktreeMissing):
            self._machine.mark_worktree_missing(action.subject, action.detail)
            self._queue.set_status(action.subject, QueueStatus.PENDING, note=action.detail)
            self._logger.warning("worktree_missing", subject=action.subject, detail=action.detail)
            return ActionRecord("worktree_missing", action.subject, action.detail)

        raise TypeError(f"unsupported cycle action: {action!r}")

    def _dispatch(
        self, entry: QueueEntry, facts: EntryFacts | None
    ) -> tuple[MergeOutcome | None, ActionRecord]:
        subject = entry.subject
        request = self._build_request(entry, facts)
        if self._queue.claim(subject) is None:
            return None, ActionRecord("dispatch_skipped", subject, "claim:lost")

        try:
            if entry.kind is EntryKind.OPERATION:
                entered = self._machine.enter_pending_merge(subject)
                if not entered.ok:
                    note = entered.reason or "phase:unknown"
                    self._queue.set_status(subject, QueueStatus.PENDING, note=note)
                    return None, ActionRecord("dispatch_skipped", subject, note)

            if request is None:
                outcome = MergeOutcome(OutcomeStatus.FAILED, subject, message="branch:missing")
            else:
                outcome = self._integrate(entry, request)
            self._finalize(entry, outcome)
        except (StateStoreError, TransientError) as exc:
            # A claimed entry must not outlive the cycle in ``processing``.
            self._logger.error("dispatch_aborted", subject=subject, error=str(exc))
            self._queue.set_status(
                subject, QueueStatus.PENDING, note=f"dispatch_aborted:{_first_line(str(exc))}"
            )
            raise
        return outcome, ActionRecord("dispatched", subject, _summary(outcome))

    def _build_request(self, entry: QueueEntry, facts: EntryFacts | None) -> MergeRequest | None:
        if entry.kind is EntryKind.BRANCH:
            return MergeRequest(subject=entry.subject, kind=EntryKind.BRANCH, branch=entry.subject)
        operation = facts.operation if facts is not None else None
        if operation is None:
            return None
        branch = self._readiness.resolve_branch(operation) or operation.branch
        if branch is None:
            return None
        worktree = Path(operation.worktree_path) if operation.worktree_path else None
        return MergeRequest(
            subject=entry.subject,
            kind=EntryKind.OPERATION,
            branch=branch,
            worktree=worktree,
        )

    def _integrate(self, entry: QueueEntry, request: MergeRequest) -> MergeOutcome:
        record: Callable[[str], None] | None = None
        if entry.kind is EntryKind.OPERATION:
            record = partial(self._machine.record_merge_commit, entry.subject)
        try:
            return self._executor.integrate(request, record_commit=record)
        except StateStoreError:
            raise
        except TrunklineError as exc:
            self._logger.error("dispatch_failed", subject=entry.subject, error=str(exc))
            return MergeOutcome(OutcomeStatus.FAILED, entry.subject, message=str(exc))

    def _finalize(self, entry: QueueEntry, outcome: MergeOutcome) -> None:
        """Record ``outcome`` on the operation first, then on the queue entry."""

        subject = entry.subject
        if outcome.status is OutcomeStatus.LOCKED:
            self._queue.set_status(subject, QueueStatus.PENDING, note=outcome.message)
            return

        if entry.kind is EntryKind.OPERATION:
            recorded = self._record_operation_outcome(subject, outcome)
            if not recorded.ok:
                # The queue never reports an outcome the operation record did not accept.
                note = f"operation:{recorded.reason or 'rejected'}"
                self._queue.set_status(subject, QueueStatus.FAILED, note=note)
                return
        elif outcome.merged and entry.external_ref:
            self._machine.close_external_ref(entry.external_ref, source=subject)
            self._machine.notify_dependents_of_ref(entry.external_ref, source=subject)

        status = {
            OutcomeStatus.MERGED: QueueStatus.COMPLETED,
            OutcomeStatus.CONFLICT: QueueStatus.CONFLICT,
        }.get(outcome.status, QueueStatus.FAILED)
        self._queue.set_status(subject, status, note=_first_line(outcome.message))
        self._logger.info(
            "dispatch_finished",
            subject=subject,
            result=outcome.status.value,
            strategy=outcome.strategy.value if outcome.strategy else None,
            commit=outcome.merge_commit,
        )

    def _record_operation_outcome(
        self, subject: str, outcome: MergeOutcome
    ) -> TransitionResult:
        if outcome.status is OutcomeStatus.MERGED:
            result = self._machine.mark_merged(subject, merge_commit=outcome.merge_commit)
        elif outcome.status is OutcomeStatus.CONFLICT:
            result = self._machine.mark_conflict(subject, outcome.message)
        elif outcome.status is OutcomeStatus.VERIFICATION_FAILED:
            result = self._machine.record_verification_failure(subject, outcome.message)
        else:
            result = self._machine.transition(
                subject,
                Phase.FAILED,
                detail=outcome.message,
                updates={"merge_status": MergeStatus.FAILED, "merge_error": outcome.message},
            )
        if not result.ok:
            self._logger.warning(
                "operation_outcome_rejected",
                subject=subject,
                result=outcome.status.value,
                reason=result.reason,
            )
        return result

    def _spawn_resume(self, name: str) -> None:
        if not self._resume_command:
            return
        argv = shlex.split(self._resume_command.replace(RESUME_PLACEHOLDER, name))
        if not argv:
            return
        try:
            subprocess.Popen(
                argv,
                cwd=self._workdir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            self._logger.warning("resume_command_failed", op=name, error=str(exc))
            return
        self._logger.info("resume_command_spawned", op=name, argv=argv)


def _first_line(text: str) -> str | None:
    lines = text.splitlines()
    return lines[0] if lines else None


def _summary(outcome: MergeOutcome) -> str:
    first = _first_line(outcome.message)
    return f"{outcome.status.value}: {first}" if first else outcome.status.value


__all__ = [
    "ActionRecord",
    "AutoResume",
    "CycleAction",
    "CyclePlan",
    "CycleReport",
    "Dispatch",
    "EntryFacts",
    "MarkStale",
    "MarkWorktreeMissing",
    "MergeDaemon",
    "RetryConflict",
    "plan_cycle",
]
