"""
trunkline — merge queue end-to-end flows

File: tests/integration/test_merge_queue_flow.py
Last updated: 2026-10-19

Purpose
- Run full daemon cycles against real git repositories: the queue, state machine, readiness
  checker, merge executor and push verifier wired together the way the CLI wires them.

What this test file should cover
- Fast-forward and rebase integrations of operations, with the recorded commit equal to the
  pushed trunk tip.
- A conflict retried exactly once, and a conflict resolved by a session.
- Bare-branch integration closing its tracker issue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest

from tests import (
    GitProject,
    InMemoryTracker,
    ScriptedSessionHost,
    SteppingClock,
    run_git,
)
from trunkline.constants import INTEGRATION_LOCK_NAME
from trunkline.control_plane.merge_daemon import MergeDaemon
from trunkline.control_plane.readiness import ReadinessChecker
from trunkline.control_plane.state_machine import StateMachine
from trunkline.domain.models import EntryKind, MergeStatus, Phase, QueueStatus
from trunkline.integration_plane.conflict_resolution import ConflictResolver
from trunkline.integration_plane.git_engine import GitEngine
from trunkline.integration_plane.merge_executor import MergeExecutor
from trunkline.integration_plane.push_verification import PushVerifier
from trunkline.persistence.operation_store import OperationStore
from trunkline.persistence.queue_store import QueueStore

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.integration


@dataclass
class _Harness:
    project: GitProject
    store: OperationStore
    queue: QueueStore
    machine: StateMachine
    daemon: MergeDaemon
    tracker: InMemoryTracker

    def completed_operation(self, name: str, branch: str) -> None:
        self.store.create(name, op_type="feature", branch=branch)
        assert self.machine.plan(name).ok
        assert self.machine.queue_work(name).ok
        assert self.machine.start_execution(name).ok
        assert self.machine.complete(name).ok
        assert self.machine.request_merge(name).ok
        self.queue.enqueue(name, kind=EntryKind.OPERATION)

    def entry_status(self, subject: str) -> QueueStatus:
        entry = self.queue.snapshot().get(subject)
        assert entry is not None
        return entry.status


def _harness(
    project: GitProject, tmp_path: Path, *, session_host: ScriptedSessionHost | None = None
) -> _Harness:
    clock = SteppingClock()
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    tracker = InMemoryTracker()
    store = OperationStore(state_dir, clock=clock)
    queue = QueueStore(state_dir, lock_attempts=1, clock=clock, sleep=lambda _s: None)
    machine = StateMachine(store, tracker=tracker)
    vcs = GitEngine(project.checkout, sleep=lambda _s: None)
    verifier = PushVerifier(vcs, attempts=2, delay_seconds=0, sleep=lambda _s: None)
    resolver = ConflictResolver(vcs, session_host, timeout_seconds=5) if session_host else None
    executor = MergeExecutor(
        vcs, verifier, lock_path=state_dir / INTEGRATION_LOCK_NAME, resolver=resolver
    )
    readiness = ReadinessChecker(store, vcs=vcs, session_host=session_host, tracker=tracker)
    daemon = MergeDaemon(
        queue, machine, readiness, executor, verifier, vcs, poll_interval_seconds=0.01, clock=clock
    )
    return _Harness(project, store, queue, machine, daemon, tracker)


def _resolve_and_continue(workdir: Path) -> None:
    (workdir / "README.md").write_text("from both\n", encoding="utf-8")
    run_git(workdir, "add", "README.md")
    run_git(workdir, "-c", "core.editor=true", "rebase", "--continue")


def test_operation_fast_forward_end_to_end(git_project: GitProject, tmp_path: Path) -> None:
    harness = _harness(git_project, tmp_path)
    tip = git_project.push_branch("feature/auth", {"auth.py": "x = 1\n"})
    harness.completed_operation("auth", "feature/auth")

    report = harness.daemon.run_cycle()

    assert [record.action for record in report.records] == ["dispatched"]
    operation = harness.store.load("auth")
    assert operation.phase is Phase.MERGED
    assert operation.merge_status is MergeStatus.MERGED
    assert operation.merge_commit == tip == git_project.remote_tip()
    assert harness.entry_status("auth") is QueueStatus.COMPLETED
    assert run_git(git_project.remote, "branch", "--list", "feature/auth").stdout == ""


def test_rebased_operation_records_the_pushed_commit(
    git_project: GitProject, tmp_path: Path
) -> None:
    harness = _harness(git_project, tmp_path)
    original_tip = git_project.push_branch("feature/auth", {"auth.py": "x = 1\n"})
    git_project.advance_trunk({"trunk.txt": "t\n"})
    run_git(git_project.checkout, "fetch", "--quiet", "origin")
    run_git(git_project.checkout, "branch", "feature/auth", "origin/feature/auth")
    harness.completed_operation("auth", "feature/auth")

    harness.daemon.run_cycle()

    operation = harness.store.load("auth")
    assert operation.phase is Phase.MERGED
    assert operation.merge_commit == git_project.remote_tip()
    assert operation.merge_commit != original_tip
    assert git_project.remote_contains(operation.merge_commit)
    assert not git_project.remote_contains(original_tip)
    object_check = run_git(
        git_project.remote, "cat-file", "-e", f"{original_tip}^{{commit}}", check=False
    )
    assert object_check.returncode == 0
    assert [record.event for record in harness.store.read_events("auth")][-1] == "merge:completed"

    # A later cycle sees the merged, verified operation and completes nothing new.
    assert harness.daemon.run_cycle().records == ()


def test_conflict_is_retried_once_then_left_for_an_operator(
    git_project: GitProject, tmp_path: Path
) -> None:
    harness = _harness(git_project, tmp_path)
    git_project.push_branch("feature/clash", {"README.md": "from branch\n"})
    trunk_tip = git_project.advance_trunk({"README.md": "from trunk\n"})
    harness.completed_operation("clash", "feature/clash")

    first = harness.daemon.run_cycle()
    assert first.outcome is not None and first.outcome.status.value == "conflict"
    assert harness.store.load("clash").phase is Phase.CONFLICT
    assert harness.entry_status("clash") is QueueStatus.CONFLICT

    retry = harness.daemon.run_cycle()
    assert [record.action for record in retry.records] == ["retry"]
    assert harness.entry_status("clash") is QueueStatus.PENDING

    second = harness.daemon.run_cycle()
    assert second.outcome is not None and second.outcome.status.value == "conflict"
    operation = harness.store.load("clash")
    assert operation.phase is Phase.CONFLICT
    assert operation.conflict_retried

    assert harness.daemon.run_cycle().records == ()
    assert harness.entry_status("clash") is QueueStatus.CONFLICT
    assert git_project.remote_tip() == trunk_tip


def test_conflict_resolved_by_a_session_is_merged(
    git_project: GitProject, tmp_path: Path
) -> None:
    host = ScriptedSessionHost(exit_code=0, on_launch=_resolve_and_continue)
    harness = _harness(git_project, tmp_path, session_host=host)
    git_project.push_branch("feature/clash", {"README.md": "from branch\n"})
    trunk_tip = git_project.advance_trunk({"README.md": "from trunk\n"})
    harness.completed_operation("clash", "feature/clash")

    report = harness.daemon.run_cycle()

    assert report.outcome is not None and report.outcome.merged
    assert report.outcome.strategy is not None
    assert report.outcome.strategy.value == "resolved"
    operation = harness.store.load("clash")
    assert operation.phase is Phase.MERGED
    assert operation.merge_commit == git_project.remote_tip()
    assert git_project.remote_contains(trunk_tip)
    assert len(host.launched) == 1


def test_bare_branch_merge_closes_its_tracker_issue(
    git_project: GitProject, tmp_path: Path
) -> None:
    harness = _harness(git_project, tmp_path)
    harness.tracker.add("wk-9", status="in_progress")
    git_project.push_branch("fix/typo", {"typo.txt": "fixed\n"})
    git_project.advance_trunk({"trunk.txt": "t\n"})
    harness.queue.enqueue("fix/typo", kind=EntryKind.BRANCH, external_ref="wk-9")

    report = harness.daemon.run_cycle()

    assert report.outcome is not None and report.outcome.merged
    assert report.outcome.strategy is not None
    assert report.outcome.strategy.value == "merge_commit"
    assert harness.entry_status("fix/typo") is QueueStatus.COMPLETED
    assert harness.tracker.issues["wk-9"].status == "done"


def test_bare_branch_gone_from_remote_is_removed(
    git_project: GitProject, tmp_path: Path
) -> None:
    harness = _harness(git_project, tmp_path)
    harness.queue.enqueue("feature/vanished", kind=EntryKind.BRANCH)

    report = harness.daemon.run_cycle()

    assert [(record.action, record.detail) for record in report.records] == [
        ("removed", "branch:gone")
    ]
    assert harness.queue.snapshot().get("feature/vanished") is None
