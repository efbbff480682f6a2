"""
trunkline — interactive session hosts

File: src/trunkline/integration_plane/session_host.py
Last updated: 2026-10-19

Purpose
- Launch resolution agents and report their completion through a ``Future``.

What should be included in this file
- ``SubprocessSessionHost``: agent runs as a detached child process.
- ``TmuxSessionHost``: agent runs inside a named tmux session an operator can attach to.
- ``create_session_host`` selecting one by backend name.

Functional requirements
- ``completion`` resolves with the agent's exit code exactly once.
- ``is_alive`` answers for sessions started by other processes where the backend allows it.
"""

from __future__ import annotations

import shlex
import shutil
import subprocess
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import SESSION_BACKENDS
from trunkline.domain.ports import SessionHandle

if TYPE_CHECKING:
    from collections.abc import Sequence

_TERMINATE_GRACE_SECONDS: Final[float] = 5.0


class SubprocessSessionHost:
    """Runs ``command + [prompt]`` in ``workdir`` as a child process."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        log_dir: Path | None = None,
        logger: Any | None = None,
    ) -> None:
        if not command:
            raise ValueError("agent command must not be empty")
        self._command = tuple(command)
        self._log_dir = log_dir
        self._processes: dict[str, subprocess.Popen[bytes]] = {}
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def launch(self, workdir: Path, prompt: str, *, name: str) -> SessionHandle:
        stdout: Any = subprocess.DEVNULL
        if self._log_dir is not None:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            stdout = (self._log_dir / f"{name}.log").open("ab")
        try:
            process = subprocess.Popen(
                [*self._command, prompt],
                cwd=workdir,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        finally:
            if stdout is not subprocess.DEVNULL:
                stdout.close()

        completion: Future[int] = Future()
        completion.set_running_or_notify_cancel()
        with self._lock:
            self._processes[name] = process

        def wait() -> None:
            completion.set_result(process.wait())

        threading.Thread(target=wait, name=f"session-{name}", daemon=True).start()
        self._logger.info("session_launched", session=name, pid=process.pid, backend="subprocess")
        return SessionHandle(name=name, workdir=workdir, completion=completion)

    def is_alive(self, session: str) -> bool:
        with self._lock:
            process = self._processes.get(session)
        return process is not None and process.poll() is None

    def terminate(self, handle: SessionHandle) -> None:
        with self._lock:
            process = self._processes.get(handle.name)
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
        self._logger.info("session_terminated", session=handle.name)


class TmuxSessionHost:
    """Runs the agent in a detached tmux session kept open until its exit status is read."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        tmux: str = "tmux",
        poll_interval_seconds: float = 1.0,
        logger: Any | None = None,
    ) -> None:
        if not command:
            raise ValueError("agent command must not be empty")
        self._command = tuple(command)
        self._tmux = tmux
        self._poll_interval = poll_interval_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def launch(self, workdir: Path, prompt: str, *, name: str) -> SessionHandle:
        shell_command = shlex.join([*self._command, prompt])
        self._tmux_run(
            [
                "new-session", "-d", "-s", name, "-c", str(workdir), shell_command,
                ";", "set-option", "-t", name, "remain-on-exit", "on",
            ],
            check=True,
        )
        completion: Future[int] = Future()
        completion.set_running_or_notify_cancel()
        threading.Thread(
            target=self._watch, args=(name, completion), name=f"tmux-{name}", daemon=True
        ).start()
        self._logger.info("session_launched", session=name, backend="tmux")
        return SessionHandle(name=name, workdir=workdir, completion=completion)

    def is_alive(self, session: str) -> bool:
        status = self._pane_status(session)
        return status is not None and status[0] is False

    def terminate(self, handle: SessionHandle) -> None:
        self._tmux_run(["kill-session", "-t", f"={handle.name}"], check=False)
        self._logger.info("session_terminated", session=handle.name)

    def _watch(self, name: str, completion: Future[int]) -> None:
        while True:
            status = self._pane_status(name)
            if status is None:
                completion.set_result(-1)
                return
            dead, exit_code = status
            if dead:
                self._tmux_run(["kill-session", "-t", f"={name}"], check=False)
                completion.set_result(exit_code)
                return
            time.sleep(self._poll_interval)

    def _pane_status(self, name: str) -> tuple[bool, int] | None:
        result = self._tmux_run(
            ["display-message", "-p", "-t", f"={name}", "#{pane_dead} #{pane_dead_status}"],
            check=False,
        )
        if result.returncode != 0:
            return None
        dead_text, _, code_text = result.stdout.strip().partition(" ")
        code = int(code_text) if code_text.strip().lstrip("-").isdigit() else 0
        return dead_text == "1", code

    def _tmux_run(self, args: Sequence[str], *, check: bool) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self._tmux, *args], text=True, capture_output=True, check=check
        )


def create_session_host(
    backend: str,
    command: Sequence[str],
    *,
    log_dir: Path | None = None,
) -> SubprocessSessionHost | TmuxSessionHost:
    if backend not in SESSION_BACKENDS:
        raise ValueError(
            f"unknown session backend {backend!r}; expected one of {SESSION_BACKENDS}"
        )
    if backend == "tmux" or (backend == "auto" and shutil.which("tmux") is not None):
        return TmuxSessionHost(command)
    return SubprocessSessionHost(command, log_dir=log_dir)


__all__ = [
    "SubprocessSessionHost",
    "TmuxSessionHost",
    "create_session_host",
]
