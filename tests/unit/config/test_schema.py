"""
scan-orchestrator — test suite for config schema validation.

File: tests/unit/config/test_schema.py
Last updated: 2026-10-17

Purpose
- Validate default config, structured issue paths, profile overlays, cross-field checks
  and secret redaction.
"""

from __future__ import annotations

from typing import Any

import pytest

from scan_orchestrator.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    insufficient_space_window_seconds,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_default_config_is_valid() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["retry"]["insufficient_space"]["maximum_attempts"] == 10


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["lanes"]["concurrency"]["default"] = 99

    assert default_config()["lanes"]["concurrency"]["default"] == 4


def test_unknown_section_and_field_are_reported_with_paths() -> None:
    config: dict[str, Any] = merge_config(default_config(), {"extras": {}})
    config["worker"]["threads"] = 4

    paths = _issue_paths(config)

    assert "extras" in paths
    assert "worker.threads" in paths


def test_missing_required_field_is_reported() -> None:
    config: dict[str, Any] = default_config()  # type: ignore[assignment]
    del config["paths"]["state_db"]

    assert _issue_paths(config) == ["paths.state_db"]


def test_embedded_secret_key_is_rejected() -> None:
    config: dict[str, Any] = default_config()  # type: ignore[assignment]
    config["tools"]["gitleaks"]["env"] = {"GITHUB_TOKEN": "ghp_secret"}

    result = validate_config(config)

    assert not result.is_valid
    assert result.issues[0].path == "tools.gitleaks.env.GITHUB_TOKEN"
    assert "secret" in result.issues[0].message


def test_unknown_command_placeholder_is_rejected() -> None:
    config = merge_config(
        default_config(), {"tools": {"custom": {"command": ["scan", "{repo}"]}}}
    )

    result = validate_config(config)

    assert [issue.path for issue in result.issues] == ["tools.custom.command[1]"]


def test_non_table_tool_entry_is_rejected() -> None:
    config = merge_config(default_config(), {"tools": {"custom": "scan {worktree}"}})

    result = validate_config(config)

    assert not result.is_valid
    assert [(issue.path, issue.message) for issue in result.issues] == [
        ("tools.custom", "expected object, got str")
    ]


def test_tool_defaults_are_filled_in() -> None:
    config = assert_valid_config(
        merge_config(default_config(), {"tools": {"custom": {"command": ["scan", "{worktree}"]}}})
    )

    assert config["tools"]["custom"] == {
        "enabled": True,
        "command": ["scan", "{worktree}"],
        "success_exit_codes": [0],
        "reports": {},
        "env": {},
    }


def test_deployment_is_never_restartable() -> None:
    config = merge_config(
        default_config(), {"restart": {"restartable_classes": ["storage", "deployment"]}}
    )

    assert _issue_paths(config) == ["restart.restartable_classes"]


def test_retry_maximum_must_not_be_below_initial() -> None:
    config = merge_config(
        default_config(),
        {"retry": {"step": {"initial_interval_seconds": 30.0, "maximum_interval_seconds": 10.0}}},
    )

    assert _issue_paths(config) == ["retry.step.maximum_interval_seconds"]


def test_run_timeout_must_cover_admission_window() -> None:
    config = merge_config(default_config(), {"timeouts": {"run_seconds": 3600.0}})

    result = validate_config(config)

    assert [issue.path for issue in result.issues] == ["timeouts.run_seconds"]
    assert "admission backoff window" in result.issues[0].message


def test_heartbeat_cannot_exceed_timeout() -> None:
    config = merge_config(default_config(), {"timeouts": {"clone_heartbeat_seconds": 900.0}})

    assert _issue_paths(config) == ["timeouts.clone_heartbeat_seconds"]


def test_worker_lanes_must_be_configured() -> None:
    config = merge_config(default_config(), {"worker": {"lanes": ["default", "gpu"]}})

    assert _issue_paths(config) == ["worker.lanes"]


def test_schema_version_mismatch_includes_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 2}})

    result = validate_config(config)

    assert result.issues[0].path == "meta.schema_version"
    assert result.issues[0].message == migration_guidance(2)
    assert "newer than supported" in migration_guidance(2)


def test_fraction_fields_are_bounded() -> None:
    config = merge_config(default_config(), {"admission": {"min_free_fraction": 1.5}})

    assert _issue_paths(config) == ["admission.min_free_fraction"]


def test_assert_valid_config_raises_with_rendered_issues() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config({"meta": {"schema_version": 1}})

    assert "paths: missing required field" in str(excinfo.value)
    assert excinfo.value.issues


def test_non_mapping_root_is_rejected() -> None:
    assert _issue_paths(["not", "a", "mapping"]) == ["<root>"]


@pytest.mark.parametrize("profile", BUILTIN_PROFILE_NAMES)
def test_builtin_profiles_apply_cleanly(profile: str) -> None:
    config = apply_profile_overlay(default_config(), profile)
    assert config["observability"]["log_level"] in {"DEBUG", "INFO"}


def test_development_profile_shortens_admission_backoff() -> None:
    config = apply_profile_overlay(default_config(), "development")

    space = config["retry"]["insufficient_space"]
    assert space["initial_interval_seconds"] == 5.0
    assert space["maximum_interval_seconds"] == 30.0
    assert space["backoff_coefficient"] == 1.5
    assert config["observability"]["log_format"] == "text"


def test_unknown_profile_is_rejected() -> None:
    with pytest.raises(ConfigValidationError, match="'staging' is not defined"):
        apply_profile_overlay(default_config(), "staging")


def test_profile_cannot_override_meta() -> None:
    config = merge_config(
        default_config(), {"profiles": {"custom": {"meta": {"schema_version": 1}}}}
    )

    assert _issue_paths(config) == ["profiles.custom"]


def test_insufficient_space_window_for_defaults() -> None:
    window = insufficient_space_window_seconds(default_config()["retry"]["insufficient_space"])

    # Nine sleeps between ten attempts; the last three hit the 600s cap.
    expected = 60 + 90 + 135 + 202.5 + 303.75 + 455.625 + 600 + 600 + 600
    assert window == pytest.approx(expected)


def test_redact_config_masks_sensitive_keys_only() -> None:
    payload = {
        "tools": {"x": {"api_key": "abc", "api_key_env": "X_API_KEY", "command": ["x"]}},
        "password": "hunter2",
    }

    redacted = redact_config(payload)

    assert redacted["password"] == "<redacted>"
    assert redacted["tools"]["x"]["api_key"] == "<redacted>"
    assert redacted["tools"]["x"]["api_key_env"] == "X_API_KEY"
    assert redacted["tools"]["x"]["command"] == ["x"]
