"""Git CLI implementation of the version-control primitives used by the merge executor."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import DEFAULT_NETWORK_ATTEMPTS, DEFAULT_REMOTE, DEFAULT_TRUNK_BRANCH
from trunkline.domain.errors import VersionControlError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping, Sequence

_UNMERGED_STATUS_CODES: Final[frozenset[str]] = frozenset(
    {"UU", "AA", "DD", "AU", "UA", "DU", "UD"}
)


class GitEngineError(VersionControlError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


class GitEngine:
    """Wrapper around the git CLI bound to one checkout that holds the trunk branch."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        trunk_branch: str = DEFAULT_TRUNK_BRANCH,
        remote: str = DEFAULT_REMOTE,
        env_overrides: Mapping[str, str] | None = None,
        network_attempts: int = DEFAULT_NETWORK_ATTEMPTS,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: Any | None = None,
    ) -> None:
        if network_attempts < 1:
            raise ValueError("network_attempts must be >= 1")
        self.repo_path = Path(repo_path).resolve()
        self.trunk_branch = trunk_branch
        self.remote = remote
        self._env_overrides = dict(env_overrides or {})
        self._network_attempts = network_attempts
        self._retry_delay = retry_delay_seconds
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def fetch(self, remote: str, ref: str | None = None, *, prune: bool = False) -> None:
        args = ["fetch", "--quiet"]
        if prune:
            args.append("--prune")
        args.append(remote)
        if ref is not None:
            args.append(f"+refs/heads/{ref}:refs/remotes/{remote}/{ref}")
        self._run_network(args)

    def checkout(self, ref: str) -> None:
        self._run_git(["checkout", "--quiet", ref])

    def reset_hard(self, ref: str) -> None:
        self._run_git(["reset", "--hard", "--quiet", ref])

    def ff_merge(self, ref: str) -> bool:
        return self._run_git(["merge", "--ff-only", "--quiet", ref], check=False).returncode == 0

    def rebase(
        self,
        branch: str,
        onto: str,
        *,
        worktree: Path | None = None,
        abort_on_conflict: bool = True,
    ) -> bool:
        """Replay ``branch`` onto ``onto``; returns ``False`` on conflict."""
        self._ensure_local_identity()
        if worktree is not None:
            return self._rebase_in(worktree, onto, abort_on_conflict=abort_on_conflict)
        with self._temporary_worktree(branch) as temp_worktree:
            return self._rebase_in(temp_worktree, onto, abort_on_conflict=True)

    def merge_commit(self, ref: str, *, message: str | None = None) -> bool:
        self._ensure_local_identity()
        args = ["merge", "--no-ff", "--no-edit", "--quiet"]
        if message:
            args.extend(["-m", message])
        args.append(ref)
        if self._run_git(args, check=False).returncode == 0:
            return True
        self._run_git(["merge", "--abort"], check=False)
        return False

    def push(self, remote: str, refspec: str) -> None:
        self._run_network(["push", "--quiet", remote, refspec])

    def delete_remote_branch(self, remote: str, branch: str) -> bool:
        result = self._run_git(["push", "--quiet", remote, "--delete", branch], check=False)
        return result.returncode == 0

    def delete_local_branch(self, branch: str) -> bool:
        return self._run_git(["branch", "-D", branch], check=False).returncode == 0

    def is_ancestor(self, commit: str, ref: str) -> bool:
        result = self._run_git(["merge-base", "--is-ancestor", commit, ref], check=False)
        return result.returncode == 0

    def current_head(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def rev_parse(self, ref: str) -> str | None:
        result = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False
        )
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def has_commit(self, commit: str) -> bool:
        result = self._run_git(["cat-file", "-e", f"{commit}^{{commit}}"], check=False)
        return result.returncode == 0

    def branch_exists(self, branch: str) -> bool:
        return self._ref_exists(f"refs/heads/{branch}")

    def remote_branch_exists(self, remote: str, branch: str) -> bool:
        return self._ref_exists(f"refs/remotes/{remote}/{branch}")

    def ls_remote(self, remote: str, ref: str) -> str | None:
        """Remote tip of ``ref`` or ``None`` if the remote has no such branch."""
        result = self._run_network(["ls-remote", remote, f"refs/heads/{ref}"])
        for line in result.stdout.splitlines():
            sha, _, name = line.partition("\t")
            if name.strip() == f"refs/heads/{ref}" and sha.strip():
                return sha.strip()
        return None

    def merge_base(self, left: str, right: str) -> str | None:
        result = self._run_git(["merge-base", left, right], check=False)
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def log_range(self, revision_range: str) -> list[str]:
        result = self._run_git(["log", "--oneline", "--no-decorate", revision_range], check=False)
        return [line for line in result.stdout.splitlines() if line.strip()]

    def create_worktree(self, branch: str, path: Path) -> Path:
        """Create a worktree for ``branch``, creating the local branch from the remote if needed."""
        if not self.branch_exists(branch) and self.remote_branch_exists(self.remote, branch):
            self._run_git(["branch", branch, f"{self.remote}/{branch}"])
        self._run_git(["worktree", "add", "--force", str(path), branch])
        return path

    def remove_worktree(self, path: Path) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        self._run_git(["worktree", "prune"], check=False)
        shutil.rmtree(path, ignore_errors=True)

    def conflicted_files(self, workdir: Path | None = None) -> list[str]:
        output = self._run_git(["status", "--porcelain"], cwd=workdir, check=False).stdout
        return [line[3:] for line in output.splitlines() if line[:2] in _UNMERGED_STATUS_CODES]

    def has_conflicts(self, workdir: Path | None = None) -> bool:
        return bool(self.conflicted_files(workdir))

    def rebase_in_progress(self, workdir: Path | None = None) -> bool:
        for marker in ("rebase-merge", "rebase-apply"):
            result = self._run_git(["rev-parse", "--git-path", marker], cwd=workdir, check=False)
            raw = result.stdout.strip()
            if not raw:
                continue
            path = Path(raw)
            if not path.is_absolute():
                path = (workdir if workdir is not None else self.repo_path) / path
            if path.exists():
                return True
        return False

    def abort_in_progress(self, workdir: Path | None = None) -> None:
        self._run_git(["rebase", "--abort"], cwd=workdir, check=False)
        self._run_git(["merge", "--abort"], cwd=workdir, check=False)

    def _rebase_in(self, worktree: Path, onto: str, *, abort_on_conflict: bool) -> bool:
        result = self._run_git(["rebase", "--quiet", onto], cwd=worktree, check=False)
        if result.returncode == 0:
            return True
        if abort_on_conflict:
            self._run_git(["rebase", "--abort"], cwd=worktree, check=False)
        return False

    def _ensure_local_identity(self) -> None:
        if self._run_git(["config", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", "trunkline"])
        if self._run_git(["config", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", "trunkline@example.invalid"])

    def _ref_exists(self, ref: str) -> bool:
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    @contextmanager
    def _temporary_worktree(self, branch: str) -> Iterator[Path]:
        existing = self._existing_worktree_for_branch(branch)
        if existing is not None:
            yield existing
            return

        temp_path = Path(tempfile.mkdtemp(prefix="trunkline-git-"))
        added = False
        try:
            self._run_git(["worktree", "add", "--force", str(temp_path), branch])
            added = True
            yield temp_path
        finally:
            if added:
                self._run_git(["worktree", "remove", "--force", str(temp_path)], check=False)
                self._run_git(["worktree", "prune"], check=False)
            shutil.rmtree(temp_path, ignore_errors=True)

    def _existing_worktree_for_branch(self, branch: str) -> Path | None:
        output = self._run_git(["worktree", "list", "--porcelain"], check=False).stdout
        branch_ref = f"refs/heads/{branch}"

        current_worktree: Path | None = None
        for line in [*output.splitlines(), ""]:
            if not line:
                current_worktree = None
                continue
            key, _, value = line.partition(" ")
            if key == "worktree":
                current_worktree = Path(value.strip()).resolve(strict=False)
            elif key == "branch" and value.strip() == branch_ref and current_worktree is not None:
                return current_worktree
        return None

    def _run_network(self, args: Sequence[str]) -> CommandResult:
        delay = self._retry_delay
        for attempt in range(1, self._network_attempts + 1):
            try:
                return self._run_git(args)
            except GitCommandError as exc:
                if attempt == self._network_attempts:
                    raise
                self._logger.warning(
                    "git_network_retry",
                    command=args[0],
                    attempt=attempt,
                    delay_seconds=delay,
                    error=exc.stderr.strip(),
                )
                self._sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.setdefault("GIT_EDITOR", "true")
        env.update(self._env_overrides)

        completed = subprocess.run(
            command,
            cwd=run_cwd,
            env=env,
            text=True,
            capture_output=True,
            input=input_text,
            check=False,
        )

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


__all__ = ["CommandResult", "GitCommandError", "GitEngine", "GitEngineError"]
