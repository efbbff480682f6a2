"""
trunkline — error taxonomy

File: src/trunkline/domain/errors.py
Last updated: 2026-10-19

Purpose
- One exception family per failure class so callers can route on type.

Functional requirements
- Validation errors are ``ValueError`` subclasses; infrastructure and integrity
  failures are ``RuntimeError`` subclasses.
- Guard failures in transitions are *not* exceptions; see ``TransitionResult``.
"""

from __future__ import annotations

from collections.abc import Mapping


class TrunklineError(Exception):
    """Base class for all trunkline failures."""


class ValidationError(TrunklineError, ValueError):
    """Malformed input, unknown reference, or a rejected request."""


class UnknownOperationError(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown operation: {name}")
        self.name = name


class UnknownQueueEntryError(ValidationError):
    def __init__(self, subject: str) -> None:
        super().__init__(f"no queue entry for: {subject}")
        self.subject = subject


class QueueInvariantError(ValidationError):
    """A queue mutation would leave more than one entry ``processing``."""


class TransientError(TrunklineError, RuntimeError):
    """Infrastructure failure that may succeed when retried."""


class LockUnavailableError(TransientError):
    def __init__(self, path: str, holder: str | None) -> None:
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"lock unavailable: {path}{detail}")
        self.path = path
        self.holder = holder


class VersionControlError(TransientError):
    """A version-control primitive failed."""


class ConflictError(TrunklineError, RuntimeError):
    """Content conflicts prevented an integration strategy from applying."""


class IntegrityError(TrunklineError, RuntimeError):
    """Pushed commit could not be confirmed on the remote trunk."""

    def __init__(self, message: str, *, diagnostics: Mapping[str, object] | None = None) -> None:
        super().__init__(message)
        self.diagnostics = dict(diagnostics or {})


class StateStoreError(TrunklineError, RuntimeError):
    """A persisted document is unreadable or unwritable."""


__all__ = [
    "ConflictError",
    "IntegrityError",
    "LockUnavailableError",
    "QueueInvariantError",
    "StateStoreError",
    "TransientError",
    "TrunklineError",
    "UnknownOperationError",
    "UnknownQueueEntryError",
    "ValidationError",
    "VersionControlError",
]
