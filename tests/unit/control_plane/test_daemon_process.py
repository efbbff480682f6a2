"""PID-file lifecycle of the background merge daemon."""

from __future__ import annotations

import os
import signal
import subprocess
import sys
from typing import TYPE_CHECKING

import pytest

from trunkline.control_plane.daemon_process import (
    DaemonController,
    daemon_pid_path,
    daemon_signals,
    pid_file_guard,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


class _Daemon:
    def __init__(self) -> None:
        self.stopped = 0
        self.woken = 0

    def stop(self) -> None:
        self.stopped += 1

    def wake(self) -> None:
        self.woken += 1


@pytest.fixture()
def fake_daemon_process() -> Iterator[subprocess.Popen[bytes]]:
    # argv mimics ``python -m trunkline run-daemon`` for the cmdline check.
    process = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(60)", "trunkline", "run-daemon"]
    )
    yield process
    if process.poll() is None:
        process.kill()
        process.wait()


def _controller(state_dir: Path, **kwargs: object) -> DaemonController:
    return DaemonController(state_dir, repo_root=state_dir, **kwargs)  # type: ignore[arg-type]


def _write_pid(state_dir: Path, text: str) -> Path:
    path = daemon_pid_path(state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_status_without_pid_file_is_not_running(state_dir: Path) -> None:
    status = _controller(state_dir).status()

    assert not status.running
    assert status.pid is None
    assert status.pid_file == state_dir / "mergeq" / "daemon.pid"
    assert status.log_file == state_dir / "mergeq" / "daemon.log"


@pytest.mark.parametrize("content", ["not-a-pid", ""])
def test_unreadable_pid_file_is_removed(state_dir: Path, content: str) -> None:
    path = _write_pid(state_dir, content)

    assert not _controller(state_dir).is_running()
    assert not path.exists()


def test_dead_pid_is_stale(state_dir: Path) -> None:
    finished = subprocess.Popen([sys.executable, "-c", "pass"])
    finished.wait()
    path = _write_pid(state_dir, f"{finished.pid}\n")

    assert _controller(state_dir).current_pid() is None
    assert not path.exists()


@pytest.mark.skipif(not os.path.exists("/proc/self/cmdline"), reason="needs /proc")
def test_live_pid_of_another_program_is_stale(state_dir: Path) -> None:
    unrelated = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    try:
        path = _write_pid(state_dir, f"{unrelated.pid}\n")
        assert _controller(state_dir).current_pid() is None
        assert not path.exists()
    finally:
        unrelated.kill()
        unrelated.wait()


def test_start_reports_an_already_running_daemon(
    state_dir: Path, fake_daemon_process: subprocess.Popen[bytes]
) -> None:
    _write_pid(state_dir, f"{fake_daemon_process.pid}\n")

    status = _controller(state_dir).start()

    assert status.running
    assert status.pid == fake_daemon_process.pid
    assert not status.changed


def test_stop_terminates_the_daemon(
    state_dir: Path, fake_daemon_process: subprocess.Popen[bytes]
) -> None:
    _write_pid(state_dir, f"{fake_daemon_process.pid}\n")
    controller = _controller(
        state_dir, sleep=lambda _seconds: fake_daemon_process.poll()
    )

    status = controller.stop()

    assert status.changed
    assert not status.running
    assert fake_daemon_process.wait(timeout=5) == -signal.SIGTERM


def test_stop_without_daemon_is_a_no_op(state_dir: Path) -> None:
    status = _controller(state_dir).stop()

    assert not status.running
    assert not status.changed


def test_pid_file_guard_publishes_and_removes_own_pid(tmp_path: Path) -> None:
    path = tmp_path / "mergeq" / "daemon.pid"

    with pid_file_guard(path) as pid:
        assert pid == os.getpid()
        assert path.read_text(encoding="utf-8") == f"{pid}\n"
    assert not path.exists()


def test_pid_file_guard_leaves_a_replaced_pid_file(tmp_path: Path) -> None:
    path = tmp_path / "daemon.pid"

    with pid_file_guard(path):
        path.write_text("1\n", encoding="utf-8")
    assert path.read_text(encoding="utf-8") == "1\n"


@pytest.mark.skipif(not hasattr(signal, "SIGUSR1"), reason="needs SIGUSR1")
def test_daemon_signals_route_to_stop_and_wake() -> None:
    daemon = _Daemon()
    before = signal.getsignal(signal.SIGTERM)

    with daemon_signals(daemon):  # type: ignore[arg-type]
        os.kill(os.getpid(), signal.SIGUSR1)
        os.kill(os.getpid(), signal.SIGTERM)

    assert daemon.woken == 1
    assert daemon.stopped == 1
    assert signal.getsignal(signal.SIGTERM) == before
