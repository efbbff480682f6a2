"""
trunkline — runtime config loader

File: src/trunkline/config/loader.py
Last updated: 2026-10-19

Purpose
- Build the effective ``trunkline.toml`` config the CLI and daemon run with.

Layering (later layers win)
1. built-in defaults
2. the TOML file (``--config`` or ``<repo root>/trunkline.toml`` when present)
3. the selected ``[profiles.<name>]`` overlay (``--profile`` or ``TRUNKLINE_PROFILE``)
4. ``TRUNKLINE_<SECTION>__<KEY>`` environment variables, coerced to the default's type
5. explicit CLI overrides given as dotted keys

State and log directories are resolved against the repository root so a daemon started from
another working directory writes to the same place.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from trunkline.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "trunkline.toml"
ENV_PREFIX: Final[str] = "TRUNKLINE_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_UNBOUND_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """The config file is unreadable or an override cannot be coerced."""


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if lowered in {"0", "false", "f", "no", "n", "off"}:
        return False
    raise ValueError(raw)


_ENV_TYPES: Final[dict[type, tuple[str, Callable[[str], object]]]] = {
    bool: ("a boolean (true/false, yes/no, on/off, 1/0)", _parse_bool),
    int: ("an integer", int),
    float: ("a number", float),
    str: ("a string", str),
}


def load_config(
    config_path: str | Path | None = None,
    *,
    repo_root: str | Path | None = None,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config with absolute, normalized path fields."""

    root = Path(repo_root).expanduser().resolve() if repo_root is not None else Path.cwd()
    env = os.environ if environ is None else environ

    if config_path is None:
        file_layer = _read_toml(root / DEFAULT_CONFIG_FILE, required=False)
    else:
        file_layer = _read_toml(Path(config_path).expanduser().resolve(), required=True)
    config = assert_valid_config(merge_config(default_config(), file_layer))

    selected = (profile if profile is not None else env.get(PROFILE_ENV, "")).strip()
    if selected:
        config = apply_profile_overlay(config, selected)

    config = merge_config(config, _env_layer(env))
    config = merge_config(config, _cli_layer(cli_overrides or {}))
    return normalize_paths(assert_valid_config(config), base_dir=root)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy ``config`` with every path field made absolute against ``base_dir``."""

    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        table = normalized.get(section)
        if isinstance(table, dict) and isinstance(table.get(key), str):
            table[key] = _absolute_posix(table[key], base_dir)
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Redacted, key-sorted JSON for ``trunkline config`` and startup logs."""

    return json.dumps(effective_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def env_name_for_path(path: tuple[str, ...]) -> str:
    """``("queue", "poll_interval_seconds")`` -> ``TRUNKLINE_QUEUE__POLL_INTERVAL_SECONDS``."""

    return ENV_PREFIX + "__".join(part.upper() for part in path)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, default in _leaves(default_config()):
        name = env_name_for_path(path)
        raw = environ.get(name)
        if raw is None or path[0] in _UNBOUND_SECTIONS:
            continue
        label, coerce = _ENV_TYPES[type(default)]
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} ({'.'.join(path)}) must be {label}") from exc
        _assign(layer, path, value)
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in sorted(overrides.items()):
        if value is None:
            continue
        path = tuple(part for part in dotted.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        _assign(layer, path, value)
    return layer


def _leaves(
    table: Mapping[str, Any], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], Any]]:
    for key in sorted(table):
        value = table[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    for part in path[:-1]:
        target = target.setdefault(part, {})
    target[path[-1]] = value


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "dump_effective_config",
    "effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
]
