"""Merge-readiness guard ordering and branch resolution."""

from __future__ import annotations

from typing import TYPE_CHECKING

from trunkline.control_plane.readiness import ReadinessChecker
from trunkline.domain.errors import VersionControlError
from trunkline.domain.models import Phase

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from tests import InMemoryTracker, ScriptedSessionHost
    from trunkline.persistence.operation_store import OperationStore


class _Branches:
    def __init__(self, local: Iterable[str] = (), remote: Iterable[str] = ()) -> None:
        self.local = set(local)
        self.remote = set(remote)
        self.fail = False

    def branch_exists(self, branch: str) -> bool:
        if self.fail:
            raise VersionControlError("git unavailable")
        return branch in self.local

    def remote_branch_exists(self, remote: str, branch: str) -> bool:
        return f"{remote}/{branch}" in self.remote


def _completed(store: OperationStore, name: str = "auth", **fields: object) -> None:
    store.create(name, op_type="feature")
    store.bulk_write(name, {"phase": Phase.COMPLETED, **fields})


def test_phase_guard_runs_first(store: OperationStore) -> None:
    store.create("auth", op_type="feature")
    checker = ReadinessChecker(store)

    assert checker.merge_ready_reason("auth") == "phase:init"
    assert not checker.is_merge_ready("auth")


def test_existing_worktree_passes_the_workspace_guard(
    store: OperationStore, tmp_path: Path
) -> None:
    worktree = tmp_path / "wt"
    worktree.mkdir()
    _completed(store, worktree_path=str(worktree))

    assert ReadinessChecker(store).merge_ready_reason("auth") == "ready"


def test_missing_worktree_without_branch_is_reported(
    store: OperationStore, tmp_path: Path
) -> None:
    _completed(store, worktree_path=str(tmp_path / "gone"))

    assert ReadinessChecker(store, vcs=_Branches()).merge_ready_reason("auth") == (
        "worktree:missing"
    )
    assert ReadinessChecker(store).merge_ready_reason("auth") == "worktree:missing"


def test_missing_worktree_passes_when_remote_branch_survives(
    store: OperationStore, tmp_path: Path
) -> None:
    _completed(store, worktree_path=str(tmp_path / "gone"))
    checker = ReadinessChecker(store, vcs=_Branches(remote={"origin/fix/auth"}))

    assert checker.merge_ready_reason("auth") == "ready"
    assert checker.resolve_branch(store.load("auth")) == "fix/auth"


def test_recorded_branch_is_the_only_candidate(store: OperationStore) -> None:
    _completed(store, branch="topic/auth")
    vcs = _Branches(local={"feature/auth"})

    assert ReadinessChecker(store, vcs=vcs).merge_ready_reason("auth") == "branch:missing"
    vcs.local.add("topic/auth")
    assert ReadinessChecker(store, vcs=vcs).merge_ready_reason("auth") == "ready"


def test_branch_lookup_errors_count_as_missing(store: OperationStore) -> None:
    _completed(store)
    vcs = _Branches(local={"feature/auth"})
    vcs.fail = True

    assert ReadinessChecker(store, vcs=vcs).merge_ready_reason("auth") == "branch:missing"


def test_live_session_blocks_merge(
    store: OperationStore, session_host: ScriptedSessionHost
) -> None:
    _completed(store, session="tmux-auth")
    session_host.alive.add("tmux-auth")
    vcs = _Branches(local={"feature/auth"})
    checker = ReadinessChecker(store, vcs=vcs, session_host=session_host)

    assert checker.merge_ready_reason("auth") == "session:active"
    session_host.alive.clear()
    assert checker.merge_ready_reason("auth") == "ready"


def test_open_plan_issues_block_merge(store: OperationStore, tracker: InMemoryTracker) -> None:
    _completed(store)
    tracker.add("wk-1", labels=["plan:auth"])
    tracker.add("wk-2", labels=["plan:auth"], status="in_progress")
    tracker.add("wk-3", labels=["plan:auth"], status="done")
    checker = ReadinessChecker(store, vcs=_Branches(local={"feature/auth"}), tracker=tracker)

    readiness = checker.evaluate(store.load("auth"))
    assert readiness.reason == "open_issues:2"
    assert readiness.guard == "open_issues"
    assert readiness.open_issue_count == 2

    tracker.fail_with = "offline"
    assert checker.merge_ready_reason("auth") == "tracker:unavailable"


def test_pending_merge_is_also_eligible(store: OperationStore) -> None:
    store.create("auth", op_type="feature", branch="feature/auth")
    store.bulk_write("auth", {"phase": Phase.PENDING_MERGE})

    checker = ReadinessChecker(store, vcs=_Branches(local={"feature/auth"}))
    assert checker.is_merge_ready("auth")
