"""Subprocess session host and backend selection."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import pytest

from trunkline.integration_plane.session_host import (
    SubprocessSessionHost,
    TmuxSessionHost,
    create_session_host,
)

if TYPE_CHECKING:
    from pathlib import Path


def _python(code: str) -> list[str]:
    # The prompt lands in sys.argv[1].
    return [sys.executable, "-c", code]


def test_session_exit_code_resolves_completion(tmp_path: Path) -> None:
    host = SubprocessSessionHost(_python("import sys; sys.exit(len(sys.argv[1]))"))

    handle = host.launch(tmp_path, "abc", name="trunkline-resolve-x")

    assert handle.completion.result(timeout=30) == 3
    assert handle.name == "trunkline-resolve-x"
    assert handle.workdir == tmp_path
    assert not host.is_alive("trunkline-resolve-x")


def test_session_runs_in_workdir_and_logs_output(tmp_path: Path) -> None:
    workdir = tmp_path / "wt"
    workdir.mkdir()
    log_dir = tmp_path / "logs"
    host = SubprocessSessionHost(
        _python("import os, sys; print(os.getcwd()); print(sys.argv[1])"), log_dir=log_dir
    )

    handle = host.launch(workdir, "resolve it", name="s1")

    assert handle.completion.result(timeout=30) == 0
    lines = (log_dir / "s1.log").read_text(encoding="utf-8").splitlines()
    assert lines == [str(workdir.resolve()), "resolve it"]


def test_terminate_stops_a_live_session(tmp_path: Path) -> None:
    host = SubprocessSessionHost(_python("import time; time.sleep(60)"))
    handle = host.launch(tmp_path, "wait", name="s2")
    assert host.is_alive("s2")

    host.terminate(handle)

    assert handle.completion.result(timeout=30) != 0
    assert not host.is_alive("s2")


def test_unknown_sessions_are_not_alive() -> None:
    assert not SubprocessSessionHost(["agent"]).is_alive("never-launched")


def test_backend_selection(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("shutil.which", lambda _name: None)

    assert isinstance(create_session_host("auto", ["agent"]), SubprocessSessionHost)
    assert isinstance(create_session_host("subprocess", ["agent"]), SubprocessSessionHost)
    assert isinstance(create_session_host("tmux", ["agent"]), TmuxSessionHost)
    with pytest.raises(ValueError, match="unknown session backend"):
        create_session_host("screen", ["agent"])


def test_empty_agent_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        SubprocessSessionHost([])
    with pytest.raises(ValueError):
        TmuxSessionHost([])
