"""Shared test doubles and git helpers for the trunkline test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from trunkline.domain.errors import TransientError
from trunkline.domain.ports import IssueStatus, SessionHandle


class SteppingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current


# ---------------------------------------------------------------------------
# Issue tracker
# ---------------------------------------------------------------------------


@dataclass
class Issue:
    ref: str
    status: str = "todo"
    labels: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)


class InMemoryTracker:
    """Issue tracker double mirroring the ``wk`` data model."""

    def __init__(self) -> None:
        self.issues: dict[str, Issue] = {}
        self.closed: list[tuple[tuple[str, ...], str]] = []
        self.fail_with: str | None = None

    def add(
        self,
        ref: str,
        *,
        status: str = "todo",
        labels: Sequence[str] = (),
        blockers: Sequence[str] = (),
    ) -> Issue:
        issue = Issue(ref=ref, status=status, labels=list(labels), blockers=list(blockers))
        self.issues[ref] = issue
        return issue

    def _issue(self, ref: str) -> Issue:
        if self.fail_with is not None:
            raise TransientError(self.fail_with)
        issue = self.issues.get(ref)
        if issue is None:
            raise TransientError(f"unknown issue {ref}")
        return issue

    def get_blockers(self, ref: str) -> Sequence[str]:
        return list(self._issue(ref).blockers)

    def get_status(self, ref: str) -> IssueStatus:
        status = self._issue(ref).status
        return IssueStatus.DONE if status in {"done", "closed"} else IssueStatus.OPEN

    def find_blocking(self, ref: str) -> Sequence[str]:
        self._issue(ref)
        return [issue.ref for issue in self.issues.values() if ref in issue.blockers]

    def resolve_label(self, ref: str) -> str | None:
        for label in self._issue(ref).labels:
            if label.startswith("plan:"):
                return label[len("plan:") :]
        return None

    def add_blocked_by(self, ref: str, blockers: Sequence[str]) -> None:
        issue = self._issue(ref)
        for blocker in blockers:
            if blocker not in issue.blockers:
                issue.blockers.append(blocker)

    def close(self, refs: Sequence[str], *, reason: str) -> None:
        for ref in refs:
            self._issue(ref).status = "done"
        self.closed.append((tuple(refs), reason))

    def list_open(self, label: str) -> Sequence[str]:
        if self.fail_with is not None:
            raise TransientError(self.fail_with)
        return [
            issue.ref
            for issue in self.issues.values()
            if label in issue.labels and issue.status in {"todo", "in_progress"}
        ]


# ---------------------------------------------------------------------------
# Session host
# ---------------------------------------------------------------------------


class ScriptedSessionHost:
    """Session host double; ``on_launch`` runs in the worktree in place of the agent.

    ``exit_code=None`` leaves the session running forever.
    """

    def __init__(
        self,
        *,
        exit_code: int | None = 0,
        on_launch: Callable[[Path], None] | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.on_launch = on_launch
        self.alive: set[str] = set()
        self.launched: list[tuple[Path, str, str]] = []
        self.terminated: list[str] = []

    def launch(self, workdir: Path, prompt: str, *, name: str) -> SessionHandle:
        self.launched.append((workdir, prompt, name))
        completion: Future[int] = Future()
        if self.on_launch is not None:
            self.on_launch(workdir)
        if self.exit_code is not None:
            completion.set_result(self.exit_code)
        return SessionHandle(name=name, workdir=workdir, completion=completion)

    def is_alive(self, session: str) -> bool:
        return session in self.alive

    def terminate(self, handle: SessionHandle) -> None:
        self.terminated.append(handle.name)


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


def run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = (
            f"git command failed: git {' '.join(args)}\n"
            f"stdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        )
        raise AssertionError(msg)
    return completed


def commit_file(worktree: Path, rel_path: str, content: str, message: str) -> str:
    path = worktree / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    run_git(worktree, "add", "--all")
    run_git(worktree, "commit", "--quiet", "-m", message)
    return run_git(worktree, "rev-parse", "HEAD").stdout.strip()


def head_of(repo: Path, ref: str = "HEAD") -> str:
    return run_git(repo, "rev-parse", ref).stdout.strip()


@dataclass(frozen=True)
class GitProject:
    """A bare ``origin``, the trunk checkout the daemon owns, and a developer clone."""

    remote: Path
    checkout: Path
    developer: Path

    def push_branch(self, branch: str, files: dict[str, str], *, base: str = "main") -> str:
        run_git(self.developer, "fetch", "--quiet", "origin")
        run_git(self.developer, "checkout", "--quiet", "-B", branch, f"origin/{base}")
        tip = ""
        for rel_path, content in files.items():
            tip = commit_file(self.developer, rel_path, content, f"{branch}: {rel_path}")
        run_git(self.developer, "push", "--quiet", "--force", "origin", branch)
        return tip

    def advance_trunk(self, files: dict[str, str]) -> str:
        run_git(self.developer, "fetch", "--quiet", "origin")
        run_git(self.developer, "checkout", "--quiet", "-B", "main", "origin/main")
        tip = ""
        for rel_path, content in files.items():
            tip = commit_file(self.developer, rel_path, content, f"trunk: {rel_path}")
        run_git(self.developer, "push", "--quiet", "origin", "main")
        return tip

    def remote_tip(self, branch: str = "main") -> str:
        return head_of(self.remote, f"refs/heads/{branch}")

    def remote_contains(self, commit: str, branch: str = "main") -> bool:
        result = run_git(
            self.remote, "merge-base", "--is-ancestor", commit, f"refs/heads/{branch}", check=False
        )
        return result.returncode == 0


def create_git_project(root: Path) -> GitProject:
    remote = root / "origin.git"
    seed = root / "seed"
    checkout = root / "checkout"
    developer = root / "developer"

    run_git(root, "init", "--quiet", "--bare", "--initial-branch=main", str(remote))
    run_git(root, "init", "--quiet", "--initial-branch=main", str(seed))
    commit_file(seed, "README.md", "seed\n", "initial commit")
    run_git(seed, "remote", "add", "origin", str(remote))
    run_git(seed, "push", "--quiet", "origin", "main")

    run_git(root, "clone", "--quiet", str(remote), str(checkout))
    run_git(root, "clone", "--quiet", str(remote), str(developer))
    return GitProject(remote=remote, checkout=checkout, developer=developer)


__all__ = [
    "GitProject",
    "InMemoryTracker",
    "Issue",
    "ScriptedSessionHost",
    "SteppingClock",
    "commit_file",
    "create_git_project",
    "head_of",
    "run_git",
]
