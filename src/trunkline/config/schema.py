"""
trunkline — configuration schema and validation.

File: src/trunkline/config/schema.py
Last updated: 2026-10-19

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown keys; report every issue before failing.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from trunkline.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BRANCH_PREFIXES,
    DEFAULT_EVENT_LOG_KEEP_SEGMENTS,
    DEFAULT_EVENT_LOG_MAX_BYTES,
    DEFAULT_LOCK_ATTEMPTS,
    DEFAULT_LOCK_INITIAL_DELAY_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REMOTE,
    DEFAULT_RESOLUTION_TIMEOUT_SECONDS,
    DEFAULT_STOP_TIMEOUT_SECONDS,
    DEFAULT_TRUNK_BRANCH,
    DEFAULT_VERIFICATION_ATTEMPTS,
    DEFAULT_VERIFICATION_DELAY_SECONDS,
    LOG_DIR,
    SESSION_BACKENDS,
    STATE_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_BRANCH_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "private_key",
    "password",
    "secret",
)

# Config paths resolved relative to the repository root.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_dir"),
    ("paths", "log_dir"),
)

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class GitConfig(TypedDict):
    trunk_branch: str
    remote: str
    branch_prefixes: str


class PathsConfig(TypedDict):
    state_dir: str
    log_dir: str


class QueueConfig(TypedDict):
    poll_interval_seconds: float
    lock_attempts: int
    lock_initial_delay_seconds: float
    default_priority: int


class DaemonConfig(TypedDict):
    stop_timeout_seconds: float
    resume_command: str


class VerificationConfig(TypedDict):
    attempts: int
    delay_seconds: float


class ResolutionConfig(TypedDict):
    enabled: bool
    timeout_seconds: float
    agent_command: str
    session_backend: Literal["auto", "tmux", "subprocess"]


class EventsConfig(TypedDict):
    max_bytes: int
    keep_segments: int


class TrackerConfig(TypedDict):
    command: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_to_console: bool


class TrunklineConfig(TypedDict):
    meta: MetaConfig
    git: GitConfig
    paths: PathsConfig
    queue: QueueConfig
    daemon: DaemonConfig
    verification: VerificationConfig
    resolution: ResolutionConfig
    events: EventsConfig
    tracker: TrackerConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, object]]


DEFAULT_CONFIG: Final[TrunklineConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "git": {
        "trunk_branch": DEFAULT_TRUNK_BRANCH,
        "remote": DEFAULT_REMOTE,
        "branch_prefixes": ",".join(DEFAULT_BRANCH_PREFIXES),
    },
    "paths": {"state_dir": str(STATE_DIR), "log_dir": str(LOG_DIR)},
    "queue": {
        "poll_interval_seconds": float(DEFAULT_POLL_INTERVAL_SECONDS),
        "lock_attempts": DEFAULT_LOCK_ATTEMPTS,
        "lock_initial_delay_seconds": DEFAULT_LOCK_INITIAL_DELAY_SECONDS,
        "default_priority": 0,
    },
    "daemon": {
        "stop_timeout_seconds": float(DEFAULT_STOP_TIMEOUT_SECONDS),
        "resume_command": "",
    },
    "verification": {
        "attempts": DEFAULT_VERIFICATION_ATTEMPTS,
        "delay_seconds": DEFAULT_VERIFICATION_DELAY_SECONDS,
    },
    "resolution": {
        "enabled": True,
        "timeout_seconds": float(DEFAULT_RESOLUTION_TIMEOUT_SECONDS),
        "agent_command": "claude",
        "session_backend": "auto",
    },
    "events": {
        "max_bytes": DEFAULT_EVENT_LOG_MAX_BYTES,
        "keep_segments": DEFAULT_EVENT_LOG_KEEP_SEGMENTS,
    },
    "tracker": {"command": ""},
    "observability": {"log_level": "INFO", "log_format": "json", "log_to_console": False},
    "profiles": {},
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Every issue found, plus the normalized config when there were none."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """The effective config breaks one or more schema rules; ``issues`` lists all of them."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "- <root>: unknown failure"))


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


_FieldParser = Callable[[object, str, _Issues], object | None]


def default_config() -> TrunklineConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Tell the operator which side to upgrade when ``meta.schema_version`` does not match."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade trunkline.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade trunkline"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; tables merge, everything else replaces."""

    merged = {key: _plain(base[key]) for key in sorted(base)}
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _plain(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Overlay ``[profiles.<profile>]`` onto ``config`` and validate the result."""

    name = (profile or "").strip()
    if not name:
        return merge_config({}, config)
    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {name!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(config, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues = _Issues()
    root = _as_object(config, "<root>", issues)
    normalized = _validate_root(root, "", issues, partial=False) if root is not None else None
    if issues or normalized is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy ``config`` with every credential-looking key replaced by ``<redacted>``."""

    if not isinstance(config, Mapping):
        return {}
    return _redacted(config)


def branch_prefixes(config: Mapping[str, Any]) -> tuple[str, ...]:
    raw = str(config["git"]["branch_prefixes"])
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    """Validate the top level; ``partial`` is set for profile overlays, which may omit fields."""

    allowed = {*_SECTION_FIELDS, "profiles"}
    _check_keys(payload, allowed, set(_SECTION_FIELDS), path, issues, partial=partial)
    out: dict[str, Any] = {}
    for name, fields in sorted(_SECTION_FIELDS.items()):
        if payload.get(name) is None:
            continue
        section_path = _join(path, name)
        section = _as_object(payload[name], section_path, issues)
        if section is None:
            continue
        _check_keys(section, set(fields), set(fields), section_path, issues, partial=partial)
        parsed = {
            key: fields[key](section[key], _join(section_path, key), issues)
            for key in sorted(fields)
            if key in section
        }
        out[name] = {key: value for key, value in parsed.items() if value is not None}

    version = out.get("meta", {}).get("schema_version")
    if isinstance(version, int) and version != ConfigSchemaVersion:
        issues.add(_join(path, "meta.schema_version"), migration_guidance(version))

    if "profiles" in payload and not partial:
        out["profiles"] = _validate_profiles(payload["profiles"], _join(path, "profiles"), issues)
    return out


def _validate_profiles(value: object, path: str, issues: _Issues) -> dict[str, dict[str, Any]]:
    profiles = _as_object(value, path, issues) or {}
    out: dict[str, dict[str, Any]] = {}
    for name in sorted(profiles):
        profile_path = _join(path, name)
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.add(profile_path, "profile names must match [a-z][a-z0-9_-]*")
            continue
        overlay = _as_object(profiles[name], profile_path, issues)
        if overlay is None:
            continue
        if "profiles" in overlay or "meta" in overlay:
            issues.add(profile_path, "profiles may not override meta or nest profiles")
            continue
        out[name] = _validate_root(overlay, profile_path, issues, partial=True)
    return out


def _check_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    required: set[str],
    path: str,
    issues: _Issues,
    *,
    partial: bool,
) -> None:
    for key in sorted(set(payload) - allowed):
        if _looks_sensitive_key(key):
            issues.add(_join(path, key), "embedded secret values are forbidden in trunkline.toml")
        else:
            issues.add(_join(path, key), "unknown field")
    if not partial:
        for key in sorted(required - set(payload)):
            issues.add(_join(path, key), "missing required field")


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------


def _type_name(value: object) -> str:
    return type(value).__name__


def _as_object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {_type_name(value)}")
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.add(path, f"object key must be string, got {_type_name(key)}")
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _as_optional_str(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {_type_name(value)}")
        return None
    return value.strip()


def _as_str(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _as_optional_str(value, path, issues)
    if parsed == "":
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_prefix_list(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    prefixes = [part.strip() for part in parsed.split(",") if part.strip()]
    if not prefixes or not all(_BRANCH_PREFIX_PATTERN.fullmatch(part) for part in prefixes):
        issues.add(path, f"expected comma-separated branch prefixes, got {parsed!r}")
        return None
    return ",".join(prefixes)


def _as_bool(value: object, path: str, issues: _Issues) -> bool | None:
    if not isinstance(value, bool):
        issues.add(path, f"expected boolean, got {_type_name(value)}")
        return None
    return value


def _int_at_least(minimum: int) -> _FieldParser:
    def parse(value: object, path: str, issues: _Issues) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {_type_name(value)}")
        elif value < minimum:
            issues.add(path, f"must be >= {minimum}")
        else:
            return value
        return None

    return parse


def _float_at_least(minimum: float) -> _FieldParser:
    def parse(value: object, path: str, issues: _Issues) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.add(path, f"expected number, got {_type_name(value)}")
        elif not math.isfinite(value):
            issues.add(path, "must be finite")
        elif value < minimum:
            issues.add(path, f"must be >= {minimum}")
        else:
            return float(value)
        return None

    return parse


def _one_of(*allowed: str) -> _FieldParser:
    def parse(value: object, path: str, issues: _Issues) -> str | None:
        parsed = _as_str(value, path, issues)
        if parsed is not None and parsed not in allowed:
            expected = ", ".join(sorted(allowed))
            issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
            return None
        return parsed

    return parse


_SECTION_FIELDS: Final[Mapping[str, Mapping[str, _FieldParser]]] = {
    "meta": {"schema_version": _int_at_least(1)},
    "git": {
        "trunk_branch": _as_str,
        "remote": _as_str,
        "branch_prefixes": _as_prefix_list,
    },
    "paths": {"state_dir": _as_path_text, "log_dir": _as_path_text},
    "queue": {
        "poll_interval_seconds": _float_at_least(0.1),
        "lock_attempts": _int_at_least(1),
        "lock_initial_delay_seconds": _float_at_least(0.0),
        "default_priority": _int_at_least(0),
    },
    "daemon": {
        "stop_timeout_seconds": _float_at_least(0.0),
        "resume_command": _as_optional_str,
    },
    "verification": {
        "attempts": _int_at_least(1),
        "delay_seconds": _float_at_least(0.0),
    },
    "resolution": {
        "enabled": _as_bool,
        "timeout_seconds": _float_at_least(1.0),
        "agent_command": _as_optional_str,
        "session_backend": _one_of(*SESSION_BACKENDS),
    },
    "events": {
        "max_bytes": _int_at_least(1024),
        "keep_segments": _int_at_least(1),
    },
    "tracker": {"command": _as_optional_str},
    "observability": {
        "log_level": _one_of(*LOG_LEVELS),
        "log_format": _one_of("json", "text"),
        "log_to_console": _as_bool,
    },
}


# ---------------------------------------------------------------------------
# Copy and redaction
# ---------------------------------------------------------------------------


def _looks_sensitive_key(key: str) -> bool:
    snake = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    normalized = _NON_ALNUM.sub("_", snake.lower()).strip("_")
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return not _SENSITIVE_KEY_TOKENS.isdisjoint(normalized.split("_"))


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _plain(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _redacted(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(key) else _redacted(item)
            for key, item in sorted(value.items())
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "SESSION_BACKENDS",
    "TrunklineConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "branch_prefixes",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
