"""
trunkline — push verification

File: src/trunkline/integration_plane/push_verification.py
Last updated: 2026-10-19

Purpose
- Confirm that a recorded merge commit is reachable from the remote trunk after a push.

Functional requirements
- Verification is commit-based: the recorded ``HEAD`` is checked, never a branch name.
- Each attempt re-fetches the remote trunk, then checks ancestry against the
  remote-tracking ref; if that fails, ``ls-remote`` is consulted as a fallback.
- A remote that moved past the commit still verifies as long as ancestry holds.
- Attempts and delay are bounded; exhaustion returns a failed report with a
  diagnostic dump and never reports success.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from trunkline.constants import (
    DEFAULT_REMOTE,
    DEFAULT_TRUNK_BRANCH,
    DEFAULT_VERIFICATION_ATTEMPTS,
    DEFAULT_VERIFICATION_DELAY_SECONDS,
)
from trunkline.domain.errors import IntegrityError, TrunklineError

if TYPE_CHECKING:
    from collections.abc import Callable

    from trunkline.domain.ports import VersionControl


@dataclass(frozen=True, slots=True)
class VerificationReport:
    ok: bool
    commit: str
    attempts: int
    method: str | None = None
    diagnostics: dict[str, object] = field(default_factory=dict)

    def failure_message(self, remote: str, trunk: str) -> str:
        return (
            f"push succeeded locally but commit {self.commit[:12]} not found on "
            f"{remote}/{trunk} after {self.attempts} attempt(s)"
        )

    def raise_for_failure(self, remote: str, trunk: str) -> None:
        if not self.ok:
            raise IntegrityError(self.failure_message(remote, trunk), diagnostics=self.diagnostics)


class PushVerifier:
    """Bounded-retry reachability check of a commit on the remote trunk."""

    def __init__(
        self,
        vcs: VersionControl,
        *,
        remote: str = DEFAULT_REMOTE,
        trunk: str = DEFAULT_TRUNK_BRANCH,
        attempts: int = DEFAULT_VERIFICATION_ATTEMPTS,
        delay_seconds: float = DEFAULT_VERIFICATION_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        logger: Any | None = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self._vcs = vcs
        self._remote = remote
        self._trunk = trunk
        self._attempts = attempts
        self._delay = delay_seconds
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def remote(self) -> str:
        return self._remote

    @property
    def trunk(self) -> str:
        return self._trunk

    def verify(self, commit: str) -> VerificationReport:
        tracking_ref = f"{self._remote}/{self._trunk}"
        for attempt in range(1, self._attempts + 1):
            try:
                self._vcs.fetch(self._remote, self._trunk)
            except TrunklineError as exc:
                self._logger.warning(
                    "push_verification_fetch_failed", commit=commit, attempt=attempt, error=str(exc)
                )

            if self._vcs.has_commit(commit) and self._vcs.is_ancestor(commit, tracking_ref):
                return self._success(commit, attempt, "ancestor")

            method = self._check_ls_remote(commit)
            if method is not None:
                return self._success(commit, attempt, method)

            if attempt < self._attempts:
                self._logger.info(
                    "push_verification_retry",
                    commit=commit,
                    attempt=attempt,
                    delay_seconds=self._delay,
                )
                self._sleep(self._delay)

        diagnostics = self.collect_diagnostics(commit)
        diagnostics["attempts"] = self._attempts
        self._logger.error("push_verification_failed", commit=commit, **_loggable(diagnostics))
        return VerificationReport(
            ok=False,
            commit=commit,
            attempts=self._attempts,
            diagnostics=diagnostics,
        )

    def verify_recorded(self, commit: str | None, *, refresh: bool = False) -> bool:
        """Cheap check that an already-recorded commit is on the remote trunk."""

        if not commit:
            return False
        if refresh:
            try:
                self._vcs.fetch(self._remote, self._trunk)
            except TrunklineError as exc:
                self._logger.warning("merge_verify_fetch_failed", commit=commit, error=str(exc))
        if not self._vcs.has_commit(commit):
            return False
        return self._vcs.is_ancestor(commit, f"{self._remote}/{self._trunk}")

    def collect_diagnostics(self, commit: str) -> dict[str, object]:
        tracking_ref = f"{self._remote}/{self._trunk}"
        diagnostics: dict[str, object] = {
            "commit": commit,
            "target": tracking_ref,
            "local_head": _safe(lambda: self._vcs.rev_parse("HEAD")),
            "local_trunk": _safe(lambda: self._vcs.rev_parse(self._trunk)),
            "remote_tracking": _safe(lambda: self._vcs.rev_parse(tracking_ref)),
            "ls_remote": _safe(lambda: self._vcs.ls_remote(self._remote, self._trunk)),
            "commit_exists": _safe(lambda: self._vcs.has_commit(commit)),
            "ancestor_of_remote_tracking": _safe(
                lambda: self._vcs.is_ancestor(commit, tracking_ref)
            ),
            "ancestor_of_local_trunk": _safe(lambda: self._vcs.is_ancestor(commit, self._trunk)),
        }
        return diagnostics

    def _check_ls_remote(self, commit: str) -> str | None:
        try:
            remote_tip = self._vcs.ls_remote(self._remote, self._trunk)
        except TrunklineError as exc:
            self._logger.warning("push_verification_ls_remote_failed", error=str(exc))
            return None
        if remote_tip is None:
            return None
        if remote_tip == commit:
            return "ls-remote"
        if self._vcs.has_commit(remote_tip) and self._vcs.is_ancestor(commit, remote_tip):
            return "ls-remote-ancestor"
        return None

    def _success(self, commit: str, attempt: int, method: str) -> VerificationReport:
        self._logger.info("push_verified", commit=commit, attempt=attempt, method=method)
        return VerificationReport(ok=True, commit=commit, attempts=attempt, method=method)


def render_diagnostics(diagnostics: dict[str, object]) -> str:
    """Multi-line operator-facing dump of a failed verification."""

    lines = ["push verification diagnostics:"]
    for key in sorted(diagnostics):
        lines.append(f"  {key}: {diagnostics[key]}")
    return "\n".join(lines)


def _safe(probe: Callable[[], object]) -> object:
    try:
        return probe()
    except TrunklineError as exc:
        return f"error: {exc}"


def _loggable(diagnostics: dict[str, object]) -> dict[str, object]:
    # "commit" is passed separately.
    return {f"diag_{key}": value for key, value in diagnostics.items() if key != "commit"}


__all__ = ["PushVerifier", "VerificationReport", "render_diagnostics"]
