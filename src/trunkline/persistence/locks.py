"""
trunkline — advisory file locks

File: src/trunkline/persistence/locks.py
Last updated: 2026-10-19

Purpose
- Mutual exclusion between independent processes sharing on-disk state.

Functional requirements
- The lock file is created exclusively and holds an owner token ``"<label> (pid N)"``.
- A lock whose owner PID is no longer alive is abandoned and may be reclaimed. Reclaim
  runs under an ``flock`` on a sibling guard file and re-checks the token before unlinking,
  so two reclaimers never both remove a lock.
- Acquisition retries a bounded number of times with a doubling delay.
- Release only removes a lock file that still carries this holder's token.
"""

from __future__ import annotations

import fcntl
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from trunkline.domain.errors import LockUnavailableError
from trunkline.utils.processes import owner_pid, pid_alive

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType


class FileLock:
    """Exclusive-create lock file with PID liveness reclaim."""

    def __init__(
        self,
        path: Path | str,
        *,
        label: str,
        attempts: int = 1,
        initial_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: Any | None = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        if initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        self._path = Path(path)
        self._label = label
        self._attempts = attempts
        self._initial_delay = initial_delay_seconds
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def guard_path(self) -> Path:
        """Sibling file whose kernel lock serializes stale-owner reclaim."""

        return self._path.with_name(f"{self._path.name}.reclaim")

    @property
    def held(self) -> bool:
        return self._held

    @property
    def owner_token(self) -> str:
        return f"{self._label} (pid {os.getpid()})"

    def holder(self) -> str | None:
        try:
            return self._path.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def try_acquire(self) -> bool:
        if self._held:
            raise RuntimeError(f"lock already held by this instance: {self._path}")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Second pass only runs after a stale owner was removed.
        for _ in range(2):
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._reclaim_if_stale():
                    continue
                return False
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.owner_token)
                handle.flush()
                os.fsync(handle.fileno())
            self._held = True
            return True
        return False

    def acquire(self) -> None:
        delay = self._initial_delay
        for attempt in range(1, self._attempts + 1):
            if self.try_acquire():
                return
            if attempt < self._attempts:
                self._logger.debug(
                    "lock_wait",
                    path=str(self._path),
                    attempt=attempt,
                    delay_seconds=delay,
                )
                self._sleep(delay)
                delay *= 2
        raise LockUnavailableError(str(self._path), self.holder())

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self.holder() != self.owner_token:
            self._logger.warning("lock_owner_changed", path=str(self._path))
            return
        self._path.unlink(missing_ok=True)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def _reclaim_if_stale(self) -> bool:
        token = self.holder()
        if token is None:
            return not self._path.exists()
        if not _abandoned(token):
            return False

        guard_fd = os.open(self.guard_path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            try:
                fcntl.flock(guard_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return False
            # Only the dead owner's token may be removed; a competing reclaimer may
            # already have replaced it with a live one.
            current = self.holder()
            if current is None:
                return True
            if current != token:
                return False
            self._path.unlink(missing_ok=True)
        finally:
            os.close(guard_fd)
        self._logger.info("lock_reclaimed", path=str(self._path), holder=token)
        return True


def _abandoned(token: str) -> bool:
    pid = owner_pid(token)
    return pid is not None and not pid_alive(pid)


__all__ = ["FileLock"]
