"""
trunkline — agent-assisted conflict resolution

File: src/trunkline/integration_plane/conflict_resolution.py
Last updated: 2026-10-19

Purpose
- When no mechanical strategy can integrate a branch, rebase it onto trunk in a
  worktree and hand the conflicted rebase to an interactive resolution session.

What should be included in this file
- ``ResolutionStatus`` / ``ResolutionResult`` outcome records.
- ``build_resolution_prompt`` producing the deterministic session context.
- ``ConflictResolver`` driving rebase, session launch, bounded wait and verification.

Functional requirements
- The session receives the commits on each side since the merge base and the list
  of conflicted files.
- Timeout terminates the session and aborts the rebase.
- Success requires a zero exit, no rebase in progress and no remaining conflicts.
- Temporary worktrees created here are always removed.
"""

from __future__ import annotations

import shutil
import tempfile
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import (
    DEFAULT_RESOLUTION_TIMEOUT_SECONDS,
    DEFAULT_TRUNK_BRANCH,
)
from trunkline.domain.errors import TrunklineError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from trunkline.domain.ports import SessionHost, VersionControl

_MAX_PROMPT_COMMITS: Final[int] = 50


class ResolutionStatus(StrEnum):
    RESOLVED = "resolved"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    status: ResolutionStatus
    branch: str
    detail: str
    conflicted_files: tuple[str, ...] = ()

    @property
    def resolved(self) -> bool:
        return self.status is ResolutionStatus.RESOLVED


@dataclass(frozen=True, slots=True)
class ResolutionRequest:
    subject: str
    branch: str
    worktree: Path | None = None


def build_resolution_prompt(
    *,
    branch: str,
    onto: str,
    trunk_commits: Sequence[str],
    branch_commits: Sequence[str],
    conflicted_files: Sequence[str],
) -> str:
    """Context handed to the resolution session, stable for identical inputs."""

    def section(title: str, items: Sequence[str]) -> list[str]:
        shown = list(items[:_MAX_PROMPT_COMMITS])
        lines = [f"{title} ({len(items)}):"]
        lines.extend(f"  {item}" for item in shown)
        if not shown:
            lines.append("  (none)")
        if len(items) > len(shown):
            lines.append(f"  ... {len(items) - len(shown)} more")
        return lines

    lines = [
        f"A rebase of branch '{branch}' onto '{onto}' stopped on conflicts.",
        "Resolve every conflict, stage the result and run `git rebase --continue`",
        "until the rebase completes. Do not push and do not switch branches.",
        "",
        *section(f"Commits on {onto} since the merge base", trunk_commits),
        "",
        *section(f"Commits on {branch} since the merge base", branch_commits),
        "",
        *section("Conflicted files", conflicted_files),
    ]
    return "\n".join(lines) + "\n"


class ConflictResolver:
    """Runs one resolution session per request and reports whether the branch is clean."""

    def __init__(
        self,
        vcs: VersionControl,
        session_host: SessionHost | None,
        *,
        trunk: str = DEFAULT_TRUNK_BRANCH,
        timeout_seconds: float = DEFAULT_RESOLUTION_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._vcs = vcs
        self._session_host = session_host
        self._trunk = trunk
        self._timeout = timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def resolve(self, request: ResolutionRequest) -> ResolutionResult:
        host = self._session_host
        if host is None:
            return ResolutionResult(
                ResolutionStatus.UNAVAILABLE, request.branch, "no session host configured"
            )

        temp_root: Path | None = None
        worktree = request.worktree
        try:
            if worktree is None or not worktree.is_dir():
                temp_root = Path(tempfile.mkdtemp(prefix="trunkline-resolve-"))
                worktree = self._vcs.create_worktree(request.branch, temp_root / "worktree")
            return self._resolve_in(request, worktree, host)
        except TrunklineError as exc:
            self._logger.error("conflict_resolution_error", subject=request.subject, error=str(exc))
            return ResolutionResult(ResolutionStatus.FAILED, request.branch, str(exc))
        finally:
            if temp_root is not None:
                self._vcs.remove_worktree(temp_root / "worktree")
                shutil.rmtree(temp_root, ignore_errors=True)

    def _resolve_in(
        self, request: ResolutionRequest, worktree: Path, host: SessionHost
    ) -> ResolutionResult:
        base = self._vcs.merge_base(self._trunk, request.branch)
        trunk_commits = self._vcs.log_range(f"{base}..{self._trunk}") if base else []
        branch_commits = self._vcs.log_range(f"{base}..{request.branch}") if base else []

        if self._vcs.rebase(
            request.branch, self._trunk, worktree=worktree, abort_on_conflict=False
        ):
            self._logger.info("conflict_rebase_clean", subject=request.subject)
            return ResolutionResult(
                ResolutionStatus.RESOLVED, request.branch, "rebase applied cleanly"
            )

        conflicted = tuple(_conflicted_files(self._vcs, worktree))
        prompt = build_resolution_prompt(
            branch=request.branch,
            onto=self._trunk,
            trunk_commits=trunk_commits,
            branch_commits=branch_commits,
            conflicted_files=conflicted,
        )
        session_name = _session_name(request.subject)
        handle = host.launch(worktree, prompt, name=session_name)
        self._logger.info(
            "conflict_session_launched",
            subject=request.subject,
            session=session_name,
            files=len(conflicted),
        )

        try:
            exit_code = handle.completion.result(timeout=self._timeout)
        except FutureTimeoutError:
            host.terminate(handle)
            self._vcs.abort_in_progress(worktree)
            self._logger.warning(
                "conflict_session_timeout", subject=request.subject, timeout_seconds=self._timeout
            )
            return ResolutionResult(
                ResolutionStatus.TIMED_OUT,
                request.branch,
                f"resolution session exceeded {self._timeout:g}s",
                conflicted,
            )

        if exit_code != 0:
            self._vcs.abort_in_progress(worktree)
            return ResolutionResult(
                ResolutionStatus.FAILED,
                request.branch,
                f"resolution session exited with {exit_code}",
                conflicted,
            )
        if self._vcs.rebase_in_progress(worktree) or self._vcs.has_conflicts(worktree):
            self._vcs.abort_in_progress(worktree)
            return ResolutionResult(
                ResolutionStatus.FAILED,
                request.branch,
                "rebase still in progress after session exit",
                conflicted,
            )

        self._logger.info("conflict_resolved", subject=request.subject, files=len(conflicted))
        return ResolutionResult(
            ResolutionStatus.RESOLVED, request.branch, "resolved by session", conflicted
        )


def _conflicted_files(vcs: VersionControl, worktree: Path) -> list[str]:
    lister = getattr(vcs, "conflicted_files", None)
    if lister is None:
        return []
    return list(lister(worktree))


def _session_name(subject: str) -> str:
    return "trunkline-resolve-" + subject.replace("/", "-").replace(".", "-")


__all__ = [
    "ConflictResolver",
    "ResolutionRequest",
    "ResolutionResult",
    "ResolutionStatus",
    "build_resolution_prompt",
]
