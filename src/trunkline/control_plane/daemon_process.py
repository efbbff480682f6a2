"""
trunkline — daemon process lifecycle

File: src/trunkline/control_plane/daemon_process.py
Last updated: 2026-10-19

Purpose
- Start, stop and inspect the background merge daemon through its PID file.

Functional requirements
- ``start`` is idempotent: a live daemon is reported, not duplicated.
- A PID file naming a dead process, or a live process that is not a trunkline
  daemon, is stale and is removed on inspection.
- ``stop`` sends SIGTERM and waits, bounded by the stop timeout, for the process to exit.
- The daemon process owns its PID file: it writes it on start and removes it on exit.
- SIGTERM/SIGINT request a graceful stop after the current cycle; SIGUSR1 wakes it early.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import (
    DAEMON_LOG_NAME,
    DAEMON_PID_NAME,
    DEFAULT_STOP_TIMEOUT_SECONDS,
    QUEUE_DIRNAME,
)
from trunkline.domain.errors import TransientError
from trunkline.utils.fs import atomic_write
from trunkline.utils.processes import pid_alive, process_cmdline, read_pid_file

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

    from trunkline.control_plane.merge_daemon import MergeDaemon

DAEMON_COMMAND: Final[str] = "run-daemon"
_START_TIMEOUT_SECONDS: Final[float] = 5.0
_POLL_SECONDS: Final[float] = 0.1


class DaemonControlError(TransientError):
    """The daemon could not be started or did not stop in time."""


@dataclass(frozen=True, slots=True)
class DaemonStatus:
    running: bool
    pid: int | None
    pid_file: Path
    log_file: Path
    changed: bool = False


def daemon_pid_path(state_dir: Path) -> Path:
    return Path(state_dir) / QUEUE_DIRNAME / DAEMON_PID_NAME


class DaemonController:
    """Controls the background ``run-daemon`` process of one project."""

    def __init__(
        self,
        state_dir: Path,
        *,
        repo_root: Path,
        log_dir: Path | None = None,
        daemon_args: Sequence[str] = (),
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
        python: str = sys.executable,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._state_dir = Path(state_dir)
        self._repo_root = Path(repo_root)
        self._log_dir = Path(log_dir) if log_dir is not None else self._state_dir / QUEUE_DIRNAME
        self._daemon_args = tuple(daemon_args)
        self._stop_timeout = stop_timeout_seconds
        self._python = python
        self._sleep = sleep
        self._monotonic = monotonic
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def pid_file(self) -> Path:
        return daemon_pid_path(self._state_dir)

    @property
    def log_file(self) -> Path:
        return self._log_dir / DAEMON_LOG_NAME

    def current_pid(self) -> int | None:
        """PID of the live daemon, removing a stale PID file on the way."""

        pid = read_pid_file(self.pid_file)
        if pid is None:
            if self.pid_file.exists():
                self._remove_stale("unreadable")
            return None
        if not pid_alive(pid):
            self._remove_stale(f"pid {pid} not running")
            return None
        if not _is_daemon_process(pid):
            self._remove_stale(f"pid {pid} is not a trunkline daemon")
            return None
        return pid

    def is_running(self) -> bool:
        return self.current_pid() is not None

    def status(self) -> DaemonStatus:
        pid = self.current_pid()
        return DaemonStatus(
            running=pid is not None, pid=pid, pid_file=self.pid_file, log_file=self.log_file
        )

    def start(self) -> DaemonStatus:
        existing = self.current_pid()
        if existing is not None:
            self._logger.info("daemon_already_running", daemon_pid=existing)
            return self.status()

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        argv = [self._python, "-m", "trunkline", DAEMON_COMMAND, *self._daemon_args]
        with self.log_file.open("ab") as log_handle:
            process = subprocess.Popen(
                argv,
                cwd=self._repo_root,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self._logger.info("daemon_spawned", daemon_pid=process.pid, argv=argv)

        deadline = self._monotonic() + _START_TIMEOUT_SECONDS
        while self._monotonic() < deadline:
            if read_pid_file(self.pid_file) == process.pid:
                return DaemonStatus(
                    running=True,
                    pid=process.pid,
                    pid_file=self.pid_file,
                    log_file=self.log_file,
                    changed=True,
                )
            returncode = process.poll()
            if returncode is not None:
                raise DaemonControlError(
                    f"daemon exited with status {returncode} during start; see {self.log_file}"
                )
            self._sleep(_POLL_SECONDS)
        raise DaemonControlError(
            f"daemon pid {process.pid} did not write {self.pid_file} "
            f"within {_START_TIMEOUT_SECONDS:.0f}s; see {self.log_file}"
        )

    def stop(self) -> DaemonStatus:
        pid = self.current_pid()
        if pid is None:
            return self.status()
        self._logger.info("daemon_stopping", daemon_pid=pid)
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

        deadline = self._monotonic() + self._stop_timeout
        while self._monotonic() < deadline:
            if not pid_alive(pid) or read_pid_file(self.pid_file) != pid:
                self._logger.info("daemon_stopped", daemon_pid=pid)
                return DaemonStatus(
                    running=False,
                    pid=None,
                    pid_file=self.pid_file,
                    log_file=self.log_file,
                    changed=True,
                )
            self._sleep(_POLL_SECONDS)
        raise DaemonControlError(
            f"daemon pid {pid} still running after {self._stop_timeout:g}s"
        )

    def wake(self) -> bool:
        pid = self.current_pid()
        if pid is None:
            return False
        os.kill(pid, signal.SIGUSR1)
        return True

    def _remove_stale(self, reason: str) -> None:
        self._logger.info("daemon_pid_file_stale", path=str(self.pid_file), reason=reason)
        self.pid_file.unlink(missing_ok=True)


@contextmanager
def pid_file_guard(path: Path) -> Iterator[int]:
    """Publish this process's PID at ``path`` for the duration of the block."""

    pid = os.getpid()
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(path, f"{pid}\n")
    try:
        yield pid
    finally:
        if read_pid_file(path) == pid:
            path.unlink(missing_ok=True)


@contextmanager
def daemon_signals(daemon: MergeDaemon) -> Iterator[None]:
    """Route SIGTERM/SIGINT to ``daemon.stop`` and SIGUSR1 to ``daemon.wake``."""

    def _stop(signum: int, _frame: object) -> None:
        daemon.stop()

    def _wake(signum: int, _frame: object) -> None:
        daemon.wake()

    handlers: dict[int, Any] = {
        signal.SIGTERM: _stop,
        signal.SIGINT: _stop,
    }
    if hasattr(signal, "SIGUSR1"):
        handlers[signal.SIGUSR1] = _wake
    previous = {signum: signal.signal(signum, handler) for signum, handler in handlers.items()}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _is_daemon_process(pid: int) -> bool:
    cmdline = process_cmdline(pid)
    if cmdline is None:
        # No /proc: fall back to liveness only.
        return True
    return "trunkline" in cmdline and DAEMON_COMMAND in cmdline


__all__ = [
    "DAEMON_COMMAND",
    "DaemonControlError",
    "DaemonController",
    "DaemonStatus",
    "daemon_pid_path",
    "daemon_signals",
    "pid_file_guard",
]
