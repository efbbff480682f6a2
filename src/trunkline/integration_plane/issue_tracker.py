"""
trunkline — issue tracker adapters

File: src/trunkline/integration_plane/issue_tracker.py
Last updated: 2026-10-19

Purpose
- ``IssueTracker`` implementations: a wok-compatible CLI adapter and a null tracker
  for projects that track no issues.

Functional requirements
- ``show -o json`` supplies status, blockers, blocking edges and labels.
- Statuses other than ``done``/``closed`` count as open.
- The display label of an issue is its first ``plan:<name>`` label, if any.
- CLI failures raise ``TransientError`` so callers can log and continue.
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from trunkline.constants import PLAN_LABEL_PREFIX
from trunkline.domain.errors import TransientError
from trunkline.domain.ports import IssueStatus

if TYPE_CHECKING:
    from collections.abc import Sequence

_DONE_STATUSES: Final[frozenset[str]] = frozenset({"done", "closed"})
_OPEN_LIST_STATUSES: Final[tuple[str, ...]] = ("todo", "in_progress")


class TrackerCommandError(TransientError):
    """The tracker CLI exited non-zero or produced unparseable output."""


class NullIssueTracker:
    """Tracker for projects without one: nothing blocks, nothing is open."""

    def get_blockers(self, ref: str) -> Sequence[str]:
        return ()

    def get_status(self, ref: str) -> IssueStatus:
        return IssueStatus.DONE

    def find_blocking(self, ref: str) -> Sequence[str]:
        return ()

    def resolve_label(self, ref: str) -> str | None:
        return None

    def add_blocked_by(self, ref: str, blockers: Sequence[str]) -> None:
        raise TrackerCommandError("no issue tracker configured")

    def close(self, refs: Sequence[str], *, reason: str) -> None:
        return None

    def list_open(self, label: str) -> Sequence[str]:
        return ()


class CommandIssueTracker:
    """Adapter over a wok-style ``wk`` command line."""

    def __init__(
        self,
        command: Sequence[str] | str = "wk",
        *,
        cwd: Path | str | None = None,
        timeout_seconds: float = 30.0,
        logger: Any | None = None,
    ) -> None:
        self._command = (command,) if isinstance(command, str) else tuple(command)
        if not self._command:
            raise ValueError("tracker command must not be empty")
        self._cwd = Path(cwd) if cwd is not None else None
        self._timeout = timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def get_blockers(self, ref: str) -> Sequence[str]:
        return _string_list(self._show(ref).get("blockers"))

    def get_status(self, ref: str) -> IssueStatus:
        status = str(self._show(ref).get("status", "")).strip().lower()
        return IssueStatus.DONE if status in _DONE_STATUSES else IssueStatus.OPEN

    def find_blocking(self, ref: str) -> Sequence[str]:
        return _string_list(self._show(ref).get("blocking"))

    def resolve_label(self, ref: str) -> str | None:
        for label in _string_list(self._show(ref).get("labels")):
            if label.startswith(PLAN_LABEL_PREFIX):
                return label[len(PLAN_LABEL_PREFIX) :] or None
        return None

    def add_blocked_by(self, ref: str, blockers: Sequence[str]) -> None:
        for blocker in blockers:
            self._run(["dep", ref, "blocked-by", blocker])
            self._logger.info("tracker_dependency_added", ref=ref, blocker=blocker)

    def close(self, refs: Sequence[str], *, reason: str) -> None:
        pending = [ref for ref in refs if self.get_status(ref) is IssueStatus.OPEN]
        if not pending:
            return
        for ref in pending:
            status = str(self._show(ref).get("status", "")).strip().lower()
            # done only applies to started issues.
            if status == "todo":
                self._run(["start", ref])
        self._run(["done", *pending, "--reason", reason])
        self._logger.info("tracker_issues_closed", refs=pending)

    def list_open(self, label: str) -> Sequence[str]:
        found: list[str] = []
        for status in _OPEN_LIST_STATUSES:
            output = self._run(["list", "--label", label, "--status", status, "-o", "ids"])
            for token in output.split():
                if token not in found:
                    found.append(token)
        return found

    def _show(self, ref: str) -> dict[str, object]:
        output = self._run(["show", ref, "-o", "json"])
        try:
            parsed = json.loads(output)
        except json.JSONDecodeError as exc:
            raise TrackerCommandError(f"invalid JSON from tracker for {ref}: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise TrackerCommandError(f"unexpected tracker payload for {ref}")
        return parsed

    def _run(self, args: Sequence[str]) -> str:
        command = (*self._command, *args)
        try:
            completed = subprocess.run(
                command,
                cwd=self._cwd,
                text=True,
                capture_output=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            rendered = " ".join(command)
            raise TrackerCommandError(f"tracker command failed: {rendered}: {exc}") from exc
        if completed.returncode != 0:
            detail = completed.stderr.strip() or f"exit {completed.returncode}"
            raise TrackerCommandError(f"tracker command failed: {' '.join(command)}: {detail}")
        return completed.stdout


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item]


__all__ = ["CommandIssueTracker", "NullIssueTracker", "TrackerCommandError"]
