"""
trunkline — process liveness helpers

File: src/trunkline/utils/processes.py
Last updated: 2026-10-19

Purpose
- Probe whether a PID recorded in a lock or PID file still belongs to a live process.

Functional requirements
- ``pid_alive`` treats permission errors as "alive" (the process exists but is foreign).
- PID file parsing tolerates trailing whitespace and reports garbage as ``None``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Final

_PID_PATTERN: Final[re.Pattern[str]] = re.compile(r"\(pid (\d+)\)")


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_pid_file(path: Path) -> int | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not text.isdigit():
        return None
    return int(text)


def owner_pid(owner_token: str) -> int | None:
    """Extract the PID from a ``"<label> (pid N)"`` owner token."""

    match = _PID_PATTERN.search(owner_token)
    if match is None:
        return None
    return int(match.group(1))


def process_cmdline(pid: int) -> str | None:
    """Return the command line of ``pid`` where ``/proc`` exposes it."""

    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return None
    return raw.replace(b"\0", b" ").decode("utf-8", errors="replace").strip()


__all__ = ["owner_pid", "pid_alive", "process_cmdline", "read_pid_file"]
