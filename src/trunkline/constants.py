"""Stable constants shared across trunkline planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git defaults.
DEFAULT_TRUNK_BRANCH: Final[str] = "main"
DEFAULT_REMOTE: Final[str] = "origin"
DEFAULT_BRANCH_PREFIXES: Final[tuple[str, ...]] = ("feature", "fix", "chore", "bugfix", "hotfix")

# Schema versions for persisted documents.
CONFIG_SCHEMA_VERSION: Final[int] = 1
OPERATION_SCHEMA_VERSION: Final[int] = 2
QUEUE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the repository root unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".trunkline")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".trunkline/logs")
OPERATIONS_DIRNAME: Final[str] = "operations"
QUEUE_DIRNAME: Final[str] = "mergeq"
OPERATION_DOCUMENT_NAME: Final[str] = "state.json"
QUEUE_DOCUMENT_NAME: Final[str] = "queue.json"
QUEUE_LOCK_NAME: Final[str] = "queue.lock"
DAEMON_PID_NAME: Final[str] = "daemon.pid"
DAEMON_LOG_NAME: Final[str] = "daemon.log"
INTEGRATION_LOCK_NAME: Final[str] = ".merge.lock"
EVENT_LOG_NAME: Final[str] = "events.log"

# Timing and bounds.
DEFAULT_POLL_INTERVAL_SECONDS: Final[int] = 30
DEFAULT_LOCK_ATTEMPTS: Final[int] = 5
DEFAULT_LOCK_INITIAL_DELAY_SECONDS: Final[float] = 1.0
DEFAULT_VERIFICATION_ATTEMPTS: Final[int] = 3
DEFAULT_VERIFICATION_DELAY_SECONDS: Final[float] = 2.0
DEFAULT_RESOLUTION_TIMEOUT_SECONDS: Final[int] = 300
DEFAULT_STOP_TIMEOUT_SECONDS: Final[int] = 10
DEFAULT_EVENT_LOG_MAX_BYTES: Final[int] = 102_400
DEFAULT_EVENT_LOG_KEEP_SEGMENTS: Final[int] = 3
DEFAULT_NETWORK_ATTEMPTS: Final[int] = 3

# Resolution session backends; "auto" prefers tmux when it is installed.
SESSION_BACKENDS: Final[tuple[str, ...]] = ("auto", "tmux", "subprocess")

# Tracker label convention for issues owned by an operation.
PLAN_LABEL_PREFIX: Final[str] = "plan:"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DAEMON_LOG_NAME",
    "DAEMON_PID_NAME",
    "DEFAULT_BRANCH_PREFIXES",
    "DEFAULT_EVENT_LOG_KEEP_SEGMENTS",
    "DEFAULT_EVENT_LOG_MAX_BYTES",
    "DEFAULT_LOCK_ATTEMPTS",
    "DEFAULT_LOCK_INITIAL_DELAY_SECONDS",
    "DEFAULT_NETWORK_ATTEMPTS",
    "DEFAULT_POLL_INTERVAL_SECONDS",
    "DEFAULT_REMOTE",
    "DEFAULT_RESOLUTION_TIMEOUT_SECONDS",
    "DEFAULT_STOP_TIMEOUT_SECONDS",
    "DEFAULT_TRUNK_BRANCH",
    "DEFAULT_VERIFICATION_ATTEMPTS",
    "DEFAULT_VERIFICATION_DELAY_SECONDS",
    "EVENT_LOG_NAME",
    "INTEGRATION_LOCK_NAME",
    "LOG_DIR",
    "OPERATIONS_DIRNAME",
    "OPERATION_DOCUMENT_NAME",
    "OPERATION_SCHEMA_VERSION",
    "PLAN_LABEL_PREFIX",
    "QUEUE_DIRNAME",
    "QUEUE_DOCUMENT_NAME",
    "QUEUE_LOCK_NAME",
    "QUEUE_SCHEMA_VERSION",
    "SESSION_BACKENDS",
    "STATE_DIR",
]
