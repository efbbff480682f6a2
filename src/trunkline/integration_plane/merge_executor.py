"""
trunkline — merge executor

File: src/trunkline/integration_plane/merge_executor.py
Last updated: 2026-10-19

Purpose
- Integrate one branch into trunk, push it, and verify the pushed commit.

What should be included in this file
- ``MergeRequest`` / ``MergeOutcome`` records and the strategy/outcome enums.
- ``MergeExecutor.integrate`` running the strategy ladder under the integration lock.

Functional requirements
- Strategies in order: fast-forward, rebase then fast-forward, merge commit.
- If none applies cleanly the conflict resolver runs; a resolved branch is fast-forwarded.
- The commit recorded and verified is ``HEAD`` captured right after the strategy
  completes and before any cleanup, never the branch name or its original tip.
- Only one integration touches trunk at a time; a held lock yields ``locked`` and
  nothing is mutated.
- Any failure after trunk was touched restores it to its pre-integration commit.

Non-functional requirements
- Version-control failures become ``failed`` outcomes instead of propagating.
- Cleanup (remote branch, worktree, local branch) is best effort and never changes
  the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from trunkline.constants import DEFAULT_REMOTE, DEFAULT_TRUNK_BRANCH
from trunkline.domain.errors import TrunklineError, VersionControlError
from trunkline.domain.models import EntryKind
from trunkline.integration_plane.conflict_resolution import ResolutionRequest
from trunkline.integration_plane.push_verification import render_diagnostics
from trunkline.persistence.locks import FileLock

if TYPE_CHECKING:
    from collections.abc import Callable

    from trunkline.domain.ports import VersionControl
    from trunkline.integration_plane.conflict_resolution import ConflictResolver
    from trunkline.integration_plane.push_verification import (
        PushVerifier,
        VerificationReport,
    )


class MergeStrategy(StrEnum):
    FAST_FORWARD = "fast_forward"
    REBASE = "rebase"
    MERGE_COMMIT = "merge_commit"
    RESOLVED = "resolved"


class OutcomeStatus(StrEnum):
    MERGED = "merged"
    CONFLICT = "conflict"
    VERIFICATION_FAILED = "verification_failed"
    FAILED = "failed"
    LOCKED = "locked"


@dataclass(frozen=True, slots=True)
class MergeRequest:
    subject: str
    kind: EntryKind
    branch: str
    worktree: Path | None = None
    allow_resolution: bool = True


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    status: OutcomeStatus
    subject: str
    strategy: MergeStrategy | None = None
    merge_commit: str | None = None
    message: str = ""
    verification: VerificationReport | None = None
    conflicts: tuple[str, ...] = ()

    @property
    def merged(self) -> bool:
        return self.status is OutcomeStatus.MERGED


class _Unresolved(Exception):
    def __init__(self, message: str, conflicts: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.conflicts = conflicts


class MergeExecutor:
    """Serialized integration of branches into the trunk checkout owned by ``vcs``."""

    def __init__(
        self,
        vcs: VersionControl,
        verifier: PushVerifier,
        *,
        lock_path: Path,
        trunk: str = DEFAULT_TRUNK_BRANCH,
        remote: str = DEFAULT_REMOTE,
        resolver: ConflictResolver | None = None,
        cleanup_branches: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._vcs = vcs
        self._verifier = verifier
        self._lock_path = lock_path
        self._trunk = trunk
        self._remote = remote
        self._resolver = resolver
        self._cleanup = cleanup_branches
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def integrate(
        self,
        request: MergeRequest,
        *,
        record_commit: Callable[[str], None] | None = None,
    ) -> MergeOutcome:
        lock = FileLock(self._lock_path, label=f"merge {request.subject}", logger=self._logger)
        if not lock.try_acquire():
            self._logger.info(
                "integration_locked", subject=request.subject, holder=lock.holder()
            )
            return MergeOutcome(
                OutcomeStatus.LOCKED,
                request.subject,
                message=f"integration lock held by {lock.holder() or 'unknown'}",
            )
        try:
            return self._integrate_locked(request, record_commit)
        finally:
            lock.release()

    def _integrate_locked(
        self,
        request: MergeRequest,
        record_commit: Callable[[str], None] | None,
    ) -> MergeOutcome:
        log = self._logger.bind(subject=request.subject, branch=request.branch)
        baseline: str | None = None
        try:
            source = self._prepare(request)
            baseline = self._vcs.current_head()
            if source is None:
                return MergeOutcome(
                    OutcomeStatus.FAILED,
                    request.subject,
                    message=f"branch:missing ({request.branch})",
                )
            strategy = self._apply_strategies(request, source)
            commit = self._vcs.current_head()
        except _Unresolved as exc:
            self._restore_trunk(baseline)
            log.warning("integration_conflict", reason=str(exc))
            return MergeOutcome(
                OutcomeStatus.CONFLICT, request.subject, message=str(exc), conflicts=exc.conflicts
            )
        except TrunklineError as exc:
            self._restore_trunk(baseline)
            log.error("integration_failed", error=str(exc))
            return MergeOutcome(OutcomeStatus.FAILED, request.subject, message=str(exc))

        log.info("merge_strategy_applied", strategy=strategy.value, commit=commit)

        try:
            self._vcs.push(self._remote, f"HEAD:{self._trunk}")
        except TrunklineError as exc:
            self._restore_trunk(baseline)
            log.error("integration_push_failed", commit=commit, error=str(exc))
            return MergeOutcome(
                OutcomeStatus.FAILED,
                request.subject,
                strategy=strategy,
                merge_commit=commit,
                message=f"push failed: {exc}",
            )

        if record_commit is not None:
            record_commit(commit)
        report = self._verifier.verify(commit)
        if not report.ok:
            message = report.failure_message(self._remote, self._trunk)
            return MergeOutcome(
                OutcomeStatus.VERIFICATION_FAILED,
                request.subject,
                strategy=strategy,
                merge_commit=commit,
                message=f"{message}\n{render_diagnostics(report.diagnostics)}",
                verification=report,
            )

        if self._cleanup:
            self._cleanup_after_merge(request)
        log.info("integration_merged", strategy=strategy.value, commit=commit)
        return MergeOutcome(
            OutcomeStatus.MERGED,
            request.subject,
            strategy=strategy,
            merge_commit=commit,
            message=f"merged via {strategy.value}",
            verification=report,
        )

    def _prepare(self, request: MergeRequest) -> str | None:
        """Bring local trunk to the remote tip; returns the ref to integrate."""

        self._vcs.abort_in_progress()
        self._vcs.checkout(self._trunk)
        self._vcs.fetch(self._remote, self._trunk)
        tracking = f"{self._remote}/{self._trunk}"
        if self._vcs.rev_parse(tracking) is not None and not self._vcs.ff_merge(tracking):
            raise VersionControlError(
                f"trunk:diverged (local {self._trunk} cannot fast-forward to {tracking})"
            )
        try:
            self._vcs.fetch(self._remote, request.branch)
        except TrunklineError as exc:
            self._logger.info("branch_fetch_skipped", branch=request.branch, error=str(exc))

        if self._vcs.branch_exists(request.branch):
            return request.branch
        if self._vcs.remote_branch_exists(self._remote, request.branch):
            return f"{self._remote}/{request.branch}"
        return None

    def _apply_strategies(self, request: MergeRequest, source: str) -> MergeStrategy:
        if self._vcs.ff_merge(source):
            return MergeStrategy.FAST_FORWARD

        if source == request.branch:
            worktree = request.worktree if request.worktree and request.worktree.is_dir() else None
            if self._vcs.rebase(request.branch, self._trunk, worktree=worktree) and (
                self._vcs.ff_merge(request.branch)
            ):
                return MergeStrategy.REBASE

        message = f"Merge {request.branch} into {self._trunk}"
        if self._vcs.merge_commit(source, message=message):
            return MergeStrategy.MERGE_COMMIT

        if self._resolver is None or not request.allow_resolution:
            raise _Unresolved(f"conflict integrating {request.branch}; no resolution available")

        result = self._resolver.resolve(
            ResolutionRequest(
                subject=request.subject, branch=request.branch, worktree=request.worktree
            )
        )
        if not result.resolved:
            raise _Unresolved(
                f"conflict:{result.status.value} ({result.detail})", result.conflicted_files
            )
        if not self._vcs.ff_merge(request.branch):
            raise _Unresolved(
                f"resolved branch {request.branch} does not fast-forward onto {self._trunk}",
                result.conflicted_files,
            )
        return MergeStrategy.RESOLVED

    def _restore_trunk(self, baseline: str | None) -> None:
        """Drop local integration commits made since ``baseline``."""

        try:
            self._vcs.abort_in_progress()
            if baseline is not None and self._vcs.current_head() != baseline:
                self._vcs.reset_hard(baseline)
        except TrunklineError as exc:
            self._logger.warning("trunk_restore_failed", error=str(exc))

    def _cleanup_after_merge(self, request: MergeRequest) -> None:
        try:
            if self._vcs.remote_branch_exists(self._remote, request.branch):
                self._vcs.delete_remote_branch(self._remote, request.branch)
            if request.worktree is not None and request.worktree.is_dir():
                self._vcs.remove_worktree(request.worktree)
            if self._vcs.branch_exists(request.branch):
                self._vcs.delete_local_branch(request.branch)
        except TrunklineError as exc:
            self._logger.warning("merge_cleanup_failed", subject=request.subject, error=str(exc))


__all__ = [
    "MergeExecutor",
    "MergeOutcome",
    "MergeRequest",
    "MergeStrategy",
    "OutcomeStatus",
]
