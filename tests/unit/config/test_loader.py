"""
trunkline — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-19

Purpose
- Validate deterministic config loading from defaults, TOML, profiles, env and CLI overrides.

What this test file should cover
- Precedence: CLI > env > profile > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the repository root.
- Redacted effective config dumping.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from trunkline.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
)
from trunkline.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _sha256_json(data: dict[str, object]) -> str:
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def test_loader_precedence_default_file_profile_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "trunkline.toml"
    _write_config(
        config_path,
        """
[queue]
poll_interval_seconds = 12.0

[profiles.ci.queue]
poll_interval_seconds = 2.0
""".strip(),
    )
    env = {"TRUNKLINE_QUEUE__POLL_INTERVAL_SECONDS": "1.5"}

    defaults = load_config(repo_root=tmp_path / "elsewhere", environ={})
    from_file = load_config(config_path, repo_root=tmp_path, environ={})
    from_profile = load_config(config_path, repo_root=tmp_path, profile="ci", environ={})
    from_env = load_config(config_path, repo_root=tmp_path, profile="ci", environ=env)
    from_cli = load_config(
        config_path,
        repo_root=tmp_path,
        profile="ci",
        environ=env,
        cli_overrides={"queue.poll_interval_seconds": 0.5},
    )

    assert defaults["queue"]["poll_interval_seconds"] == 30.0
    assert from_file["queue"]["poll_interval_seconds"] == 12.0
    assert from_profile["queue"]["poll_interval_seconds"] == 2.0
    assert from_env["queue"]["poll_interval_seconds"] == 1.5
    assert from_cli["queue"]["poll_interval_seconds"] == 0.5


def test_default_config_file_is_found_under_repo_root(tmp_path: Path) -> None:
    _write_config(tmp_path / "trunkline.toml", '[git]\ntrunk_branch = "develop"\n')

    loaded = load_config(repo_root=tmp_path, environ={})

    assert loaded["git"]["trunk_branch"] == "develop"


def test_profile_can_be_selected_from_environment(tmp_path: Path) -> None:
    config_path = tmp_path / "trunkline.toml"
    _write_config(config_path, "[profiles.fast.verification]\nattempts = 1\n")

    loaded = load_config(config_path, repo_root=tmp_path, environ={"TRUNKLINE_PROFILE": "fast"})

    assert loaded["verification"]["attempts"] == 1


def test_env_mapping_covers_every_scalar_type(tmp_path: Path) -> None:
    loaded = load_config(
        repo_root=tmp_path,
        environ={
            "TRUNKLINE_GIT__REMOTE": " upstream ",
            "TRUNKLINE_VERIFICATION__ATTEMPTS": "7",
            "TRUNKLINE_RESOLUTION__ENABLED": "off",
            "TRUNKLINE_QUEUE__LOCK_INITIAL_DELAY_SECONDS": "0.25",
        },
    )

    assert loaded["git"]["remote"] == "upstream"
    assert loaded["verification"]["attempts"] == 7
    assert loaded["resolution"]["enabled"] is False
    assert loaded["queue"]["lock_initial_delay_seconds"] == 0.25


def test_env_name_for_path_is_deterministic() -> None:
    path = ("queue", "poll_interval_seconds")

    assert env_name_for_path(path) == "TRUNKLINE_QUEUE__POLL_INTERVAL_SECONDS"


@pytest.mark.parametrize(
    ("name", "raw"),
    [
        ("TRUNKLINE_VERIFICATION__ATTEMPTS", "three"),
        ("TRUNKLINE_QUEUE__POLL_INTERVAL_SECONDS", "soon"),
        ("TRUNKLINE_RESOLUTION__ENABLED", "maybe"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, name: str, raw: str
) -> None:
    with pytest.raises(ConfigLoadError, match=name):
        load_config(repo_root=tmp_path, environ={name: raw})


def test_invalid_values_fail_validation_with_paths(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(
            repo_root=tmp_path,
            environ={},
            cli_overrides={"verification.attempts": 0, "queue.poll_interval_seconds": 0.0},
        )

    paths = {issue.path for issue in excinfo.value.issues}
    assert paths == {"verification.attempts", "queue.poll_interval_seconds"}


def test_explicit_missing_file_and_bad_toml_raise(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "missing.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[queue\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_unknown_profile_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError, match="profile 'nope' is not defined"):
        load_config(repo_root=tmp_path, profile="nope", environ={})


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    env = {"TRUNKLINE_VERIFICATION__ATTEMPTS": "4", "TRUNKLINE_RESOLUTION__ENABLED": "false"}
    cli = {"git.trunk_branch": "trunk"}

    first = load_config(repo_root=tmp_path, environ=env, cli_overrides=cli)
    second = load_config(repo_root=tmp_path, environ=env, cli_overrides=cli)

    assert _sha256_json(first) == _sha256_json(second)


def test_path_normalization_is_relative_to_repo_root(tmp_path: Path) -> None:
    _write_config(tmp_path / "trunkline.toml", '[paths]\nlog_dir = "var/../logs"\n')

    loaded = load_config(repo_root=tmp_path, environ={})

    root = tmp_path.resolve()
    assert loaded["paths"]["log_dir"] == (root / "logs").as_posix()
    assert loaded["paths"]["state_dir"] == (root / ".trunkline").as_posix()


def test_none_cli_overrides_are_ignored(tmp_path: Path) -> None:
    loaded = load_config(repo_root=tmp_path, environ={}, cli_overrides={"git.remote": None})

    assert loaded["git"]["remote"] == "origin"


def test_dump_effective_config_is_redacted_and_deterministic(tmp_path: Path) -> None:
    loaded = load_config(repo_root=tmp_path, environ={})
    loaded["tracker"]["api_token"] = "hunter2"

    first = dump_effective_config(loaded)
    second = dump_effective_config(loaded)

    assert first == second
    parsed = json.loads(first)
    assert parsed["tracker"]["api_token"] == "<redacted>"
    assert parsed["git"]["trunk_branch"] == "main"


def test_config_package_exports_loader_and_errors(tmp_path: Path) -> None:
    import trunkline.config as config_pkg

    loaded = config_pkg.load_config(repo_root=tmp_path, environ={})
    assert loaded["meta"]["schema_version"] == 1

    with pytest.raises(config_pkg.ConfigLoadError):
        config_pkg.load_config(tmp_path / "missing.toml")
