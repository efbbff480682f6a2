"""
trunkline — merge readiness guards

File: src/trunkline/control_plane/readiness.py
Last updated: 2026-10-19

Purpose
- Decide, freshly on every poll, whether an operation may be integrated now.

Functional requirements
- Guards run in order and the first failure is reported:
  ``phase:<p>``, ``worktree:missing`` / ``branch:missing``, ``session:active``,
  ``open_issues:<n>``; a passing operation reports ``ready``.
- The worktree guard also passes when the operation's branch is still resolvable
  locally or on the remote, trying conventional prefixes when no branch is recorded.
- Nothing is cached between evaluations.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import DEFAULT_BRANCH_PREFIXES, DEFAULT_REMOTE, PLAN_LABEL_PREFIX
from trunkline.domain.errors import TrunklineError
from trunkline.domain.models import MERGE_READY_PHASES, Operation

if TYPE_CHECKING:
    from collections.abc import Sequence

    from trunkline.domain.ports import IssueTracker, SessionHost, VersionControl
    from trunkline.persistence.operation_store import OperationStore

READY: Final[str] = "ready"


@dataclass(frozen=True, slots=True)
class Readiness:
    ready: bool
    reason: str
    detail: str

    @property
    def guard(self) -> str:
        return self.reason.split(":", 1)[0]

    @property
    def open_issue_count(self) -> int:
        if self.guard != "open_issues":
            return 0
        return int(self.reason.split(":", 1)[1])


_READY = Readiness(ready=True, reason=READY, detail="ready to merge")


class ReadinessChecker:
    """Evaluates the merge-readiness guard conjunction for operations."""

    def __init__(
        self,
        store: OperationStore,
        *,
        vcs: VersionControl | None = None,
        session_host: SessionHost | None = None,
        tracker: IssueTracker | None = None,
        remote: str = DEFAULT_REMOTE,
        branch_prefixes: Sequence[str] = DEFAULT_BRANCH_PREFIXES,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._vcs = vcs
        self._session_host = session_host
        self._tracker = tracker
        self._remote = remote
        self._branch_prefixes = tuple(branch_prefixes)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def is_merge_ready(self, name: str) -> bool:
        return self.evaluate(self._store.load(name)).ready

    def merge_ready_reason(self, name: str) -> str:
        return self.evaluate(self._store.load(name)).reason

    def evaluate(self, operation: Operation) -> Readiness:
        if operation.phase not in MERGE_READY_PHASES:
            return Readiness(
                ready=False,
                reason=f"phase:{operation.phase.value}",
                detail=f"phase is {operation.phase.value}",
            )

        workspace = self._check_workspace(operation)
        if workspace is not None:
            return workspace

        if operation.session and self._session_alive(operation.session):
            return Readiness(
                ready=False,
                reason="session:active",
                detail=f"session {operation.session} still active",
            )

        open_issues = self._open_issue_count(operation)
        if open_issues is None:
            return Readiness(
                ready=False, reason="tracker:unavailable", detail="issue tracker unavailable"
            )
        if open_issues:
            return Readiness(
                ready=False,
                reason=f"open_issues:{open_issues}",
                detail=f"{open_issues} issue(s) still open",
            )
        return _READY

    def resolve_branch(self, operation: Operation) -> str | None:
        """Return the branch holding ``operation``'s work, if it can still be found."""

        if self._vcs is None:
            return operation.branch
        candidates = (
            [operation.branch]
            if operation.branch
            else [f"{prefix}/{operation.name}" for prefix in self._branch_prefixes]
        )
        for branch in candidates:
            try:
                if self._vcs.branch_exists(branch) or self._vcs.remote_branch_exists(
                    self._remote, branch
                ):
                    return branch
            except TrunklineError as exc:
                self._logger.warning("branch_lookup_failed", op=operation.name, error=str(exc))
        return None

    def _check_workspace(self, operation: Operation) -> Readiness | None:
        if operation.worktree_path and Path(operation.worktree_path).is_dir():
            return None
        if self.resolve_branch(operation) is not None and self._vcs is not None:
            return None
        if operation.worktree_path or self._vcs is None:
            return Readiness(
                ready=False,
                reason="worktree:missing",
                detail=f"worktree missing: {operation.worktree_path or '(none recorded)'}",
            )
        return Readiness(
            ready=False,
            reason="branch:missing",
            detail=f"branch missing: {operation.branch or operation.name}",
        )

    def _session_alive(self, session: str) -> bool:
        if self._session_host is None:
            return False
        return self._session_host.is_alive(session)

    def _open_issue_count(self, operation: Operation) -> int | None:
        if self._tracker is None:
            return 0
        try:
            return len(self._tracker.list_open(f"{PLAN_LABEL_PREFIX}{operation.name}"))
        except TrunklineError as exc:
            self._logger.warning("open_issue_query_failed", op=operation.name, error=str(exc))
            return None


__all__ = ["READY", "Readiness", "ReadinessChecker"]
