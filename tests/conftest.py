"""Shared fixtures: environment isolation, stores on a temp state dir, and test doubles."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from tests import (
    GitProject,
    InMemoryTracker,
    ScriptedSessionHost,
    SteppingClock,
    create_git_project,
)
from trunkline.observability import shutdown_logging
from trunkline.persistence.operation_store import OperationStore
from trunkline.persistence.queue_store import QueueStore

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Iterator[None]:
    env_root = tmp_path_factory.mktemp("env")
    home = env_root / "home"
    xdg = env_root / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Trunkline Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@example.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Trunkline Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@example.invalid")
    monkeypatch.delenv("NO_COLOR", raising=False)
    for name in list(os.environ):
        if name.startswith("TRUNKLINE_"):
            monkeypatch.delenv(name, raising=False)
    yield
    shutdown_logging()


@pytest.fixture()
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture()
def state_dir(tmp_path: Path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture()
def store(state_dir: Path, clock: SteppingClock) -> OperationStore:
    return OperationStore(state_dir, clock=clock)


@pytest.fixture()
def queue(state_dir: Path, clock: SteppingClock) -> QueueStore:
    return QueueStore(state_dir, lock_attempts=1, clock=clock, sleep=lambda _s: None)


@pytest.fixture()
def tracker() -> InMemoryTracker:
    return InMemoryTracker()


@pytest.fixture()
def session_host() -> ScriptedSessionHost:
    return ScriptedSessionHost()


@pytest.fixture()
def git_project(tmp_path: Path) -> GitProject:
    return create_git_project(tmp_path)
