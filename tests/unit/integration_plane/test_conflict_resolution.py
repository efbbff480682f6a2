"""Conflict resolution sessions driven through a scripted session host."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tests import GitProject, ScriptedSessionHost, head_of, run_git
from trunkline.integration_plane.conflict_resolution import (
    ConflictResolver,
    ResolutionRequest,
    ResolutionStatus,
    build_resolution_prompt,
)
from trunkline.integration_plane.git_engine import GitEngine

if TYPE_CHECKING:
    from pathlib import Path


def _diverged(project: GitProject, *, conflicting: bool) -> GitEngine:
    branch_file = "README.md" if conflicting else "feature.txt"
    project.push_branch("feature/clash", {branch_file: "from branch\n"})
    project.advance_trunk({"README.md": "from trunk\n"})
    engine = GitEngine(project.checkout, sleep=lambda _s: None)
    engine.fetch("origin", "main")
    engine.fetch("origin", "feature/clash")
    assert engine.ff_merge("origin/main")
    return engine


def _resolve_and_continue(workdir: Path) -> None:
    (workdir / "README.md").write_text("from both\n", encoding="utf-8")
    run_git(workdir, "add", "README.md")
    run_git(workdir, "-c", "core.editor=true", "rebase", "--continue")


def _request() -> ResolutionRequest:
    return ResolutionRequest(subject="feature/clash", branch="feature/clash")


def test_prompt_is_deterministic_and_lists_both_sides() -> None:
    kwargs = {
        "branch": "feature/x",
        "onto": "main",
        "trunk_commits": ["aaa trunk change"],
        "branch_commits": [],
        "conflicted_files": ["README.md", "src/app.py"],
    }

    first = build_resolution_prompt(**kwargs)  # type: ignore[arg-type]
    second = build_resolution_prompt(**kwargs)  # type: ignore[arg-type]

    assert first == second
    assert "Commits on main since the merge base (1):\n  aaa trunk change" in first
    assert "Commits on feature/x since the merge base (0):\n  (none)" in first
    assert "Conflicted files (2):\n  README.md\n  src/app.py" in first


def test_prompt_truncates_long_histories() -> None:
    prompt = build_resolution_prompt(
        branch="b",
        onto="main",
        trunk_commits=[f"c{index}" for index in range(60)],
        branch_commits=[],
        conflicted_files=[],
    )

    assert "  ... 10 more" in prompt


def test_without_session_host_resolution_is_unavailable(git_project: GitProject) -> None:
    engine = _diverged(git_project, conflicting=True)

    result = ConflictResolver(engine, None).resolve(_request())

    assert result.status is ResolutionStatus.UNAVAILABLE
    assert not result.resolved


def test_clean_rebase_needs_no_session(
    git_project: GitProject, session_host: ScriptedSessionHost
) -> None:
    engine = _diverged(git_project, conflicting=False)

    result = ConflictResolver(engine, session_host).resolve(_request())

    assert result.status is ResolutionStatus.RESOLVED
    assert session_host.launched == []
    assert engine.is_ancestor("main", "feature/clash")


def test_session_that_finishes_the_rebase_resolves(git_project: GitProject) -> None:
    engine = _diverged(git_project, conflicting=True)
    host = ScriptedSessionHost(exit_code=0, on_launch=_resolve_and_continue)

    result = ConflictResolver(engine, host).resolve(_request())

    assert result.status is ResolutionStatus.RESOLVED
    assert result.conflicted_files == ("README.md",)
    (workdir, prompt, name) = host.launched[0]
    assert name == "trunkline-resolve-feature-clash"
    assert "README.md" in prompt
    assert not workdir.exists()
    assert engine.is_ancestor("main", "feature/clash")
    assert engine.ff_merge("feature/clash")


def test_nonzero_exit_aborts_the_rebase(git_project: GitProject) -> None:
    engine = _diverged(git_project, conflicting=True)
    before = head_of(git_project.checkout, "origin/feature/clash")
    host = ScriptedSessionHost(exit_code=2)

    result = ConflictResolver(engine, host).resolve(_request())

    assert result.status is ResolutionStatus.FAILED
    assert result.detail == "resolution session exited with 2"
    assert head_of(git_project.checkout, "feature/clash") == before


def test_session_that_leaves_the_rebase_open_fails(git_project: GitProject) -> None:
    engine = _diverged(git_project, conflicting=True)
    host = ScriptedSessionHost(exit_code=0)

    result = ConflictResolver(engine, host).resolve(_request())

    assert result.status is ResolutionStatus.FAILED
    assert "still in progress" in result.detail


def test_timeout_terminates_session_and_aborts(git_project: GitProject) -> None:
    engine = _diverged(git_project, conflicting=True)
    before = head_of(git_project.checkout, "origin/feature/clash")
    host = ScriptedSessionHost(exit_code=None)

    result = ConflictResolver(engine, host, timeout_seconds=0.05).resolve(_request())

    assert result.status is ResolutionStatus.TIMED_OUT
    assert host.terminated == ["trunkline-resolve-feature-clash"]
    assert head_of(git_project.checkout, "feature/clash") == before


def test_existing_worktree_is_reused_and_kept(
    git_project: GitProject, tmp_path: Path
) -> None:
    engine = _diverged(git_project, conflicting=True)
    worktree = engine.create_worktree("feature/clash", tmp_path / "operation-wt")
    host = ScriptedSessionHost(exit_code=0, on_launch=_resolve_and_continue)

    result = ConflictResolver(engine, host).resolve(
        ResolutionRequest(subject="auth", branch="feature/clash", worktree=worktree)
    )

    assert result.resolved
    assert host.launched[0][0] == worktree
    assert host.launched[0][2] == "trunkline-resolve-auth"
    assert worktree.is_dir()


def test_timeout_must_be_positive(git_project: GitProject) -> None:
    with pytest.raises(ValueError):
        ConflictResolver(GitEngine(git_project.checkout), None, timeout_seconds=0)
