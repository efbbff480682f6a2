"""
trunkline — collaborator protocols

File: src/trunkline/domain/ports.py
Last updated: 2026-10-19

Purpose
- Narrow contracts for the external issue tracker, version control and the
  interactive session host, so the core can be exercised with in-memory fakes.

Functional requirements
- Every version-control primitive may fail; failures raise ``VersionControlError``.
- Remote state reported by version control is eventually consistent.
- A session's completion is delivered through a ``Future`` resolved with the exit code.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence
    from concurrent.futures import Future
    from pathlib import Path


class IssueStatus(StrEnum):
    OPEN = "open"
    DONE = "done"


class IssueTracker(Protocol):
    """Dependency queries and mutations against the external tracker."""

    def get_blockers(self, ref: str) -> Sequence[str]: ...

    def get_status(self, ref: str) -> IssueStatus: ...

    def find_blocking(self, ref: str) -> Sequence[str]: ...

    def resolve_label(self, ref: str) -> str | None: ...

    def add_blocked_by(self, ref: str, blockers: Sequence[str]) -> None: ...

    def close(self, refs: Sequence[str], *, reason: str) -> None: ...

    def list_open(self, label: str) -> Sequence[str]: ...


class VersionControl(Protocol):
    """Primitive repository operations used by the merge executor."""

    def fetch(self, remote: str, ref: str | None = None, *, prune: bool = False) -> None: ...

    def checkout(self, ref: str) -> None: ...

    def reset_hard(self, ref: str) -> None: ...

    def ff_merge(self, ref: str) -> bool: ...

    def rebase(
        self,
        branch: str,
        onto: str,
        *,
        worktree: Path | None = None,
        abort_on_conflict: bool = True,
    ) -> bool: ...

    def merge_commit(self, ref: str, *, message: str | None = None) -> bool: ...

    def push(self, remote: str, refspec: str) -> None: ...

    def delete_remote_branch(self, remote: str, branch: str) -> bool: ...

    def delete_local_branch(self, branch: str) -> bool: ...

    def is_ancestor(self, commit: str, ref: str) -> bool: ...

    def current_head(self) -> str: ...

    def rev_parse(self, ref: str) -> str | None: ...

    def has_commit(self, commit: str) -> bool: ...

    def branch_exists(self, branch: str) -> bool: ...

    def remote_branch_exists(self, remote: str, branch: str) -> bool: ...

    def ls_remote(self, remote: str, ref: str) -> str | None: ...

    def merge_base(self, left: str, right: str) -> str | None: ...

    def log_range(self, revision_range: str) -> list[str]: ...

    def create_worktree(self, branch: str, path: Path) -> Path: ...

    def remove_worktree(self, path: Path) -> None: ...

    def has_conflicts(self, workdir: Path | None = None) -> bool: ...

    def rebase_in_progress(self, workdir: Path | None = None) -> bool: ...

    def abort_in_progress(self, workdir: Path | None = None) -> None: ...


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """Running interactive session; ``completion`` resolves with the exit code."""

    name: str
    workdir: Path
    completion: Future[int]


class SessionHost(Protocol):
    """Launches and observes interactive agent sessions."""

    def launch(self, workdir: Path, prompt: str, *, name: str) -> SessionHandle: ...

    def is_alive(self, session: str) -> bool: ...

    def terminate(self, handle: SessionHandle) -> None: ...


__all__ = [
    "IssueStatus",
    "IssueTracker",
    "SessionHandle",
    "SessionHost",
    "VersionControl",
]
