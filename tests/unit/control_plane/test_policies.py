"""
scan-orchestrator — test suite for retry and pipeline policies.

File: tests/unit/control_plane/test_policies.py
Last updated: 2026-10-17

Purpose
- Validate exponential backoff schedules, the insufficient-space policy and the
  flattened pipeline settings derived from config.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from scan_orchestrator.config.schema import ConfigValidationError
from scan_orchestrator.control_plane.policies import PipelineSettings, RetryPolicy, StepOptions
from scan_orchestrator.domain.models import FailureClass, ScanConfig, ScanRequest


def test_insufficient_space_schedule_matches_defaults() -> None:
    policy = PipelineSettings(workspace_root=Path("ws"), results_root=Path("out")).space_retry

    assert policy.delays() == pytest.approx(
        (60.0, 90.0, 135.0, 202.5, 303.75, 455.625, 600.0, 600.0, 600.0)
    )
    assert policy.total_delay_seconds() == pytest.approx(3046.875)


def test_step_retry_defaults() -> None:
    policy = RetryPolicy()

    assert policy.delays() == (5.0, 10.0)
    assert policy.delay_for(10) == 60.0


def test_no_retry_has_single_attempt() -> None:
    policy = RetryPolicy.no_retry()

    assert policy.maximum_attempts == 1
    assert policy.delays() == ()


def test_delay_for_large_retry_numbers_stays_capped() -> None:
    policy = RetryPolicy(1.0, 10.0, 30.0, 5)

    assert policy.delay_for(10_000) == 30.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"initial_interval_seconds": -1.0},
        {"backoff_coefficient": 0.5},
        {"initial_interval_seconds": 10.0, "maximum_interval_seconds": 5.0},
        {"maximum_attempts": 0},
    ],
)
def test_retry_policy_validation(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)  # type: ignore[arg-type]


def test_delay_for_rejects_zero() -> None:
    with pytest.raises(ValueError, match="retry_number"):
        RetryPolicy().delay_for(0)


def test_from_mapping_uses_defaults_for_missing_keys() -> None:
    policy = RetryPolicy.from_mapping({"maximum_attempts": 7})

    assert policy == RetryPolicy(5.0, 2.0, 60.0, 7)


def test_step_options_validation() -> None:
    assert not StepOptions().supervised
    assert StepOptions(heartbeat_timeout_seconds=5).supervised
    with pytest.raises(ValueError, match="start_to_close_seconds"):
        StepOptions(start_to_close_seconds=0)


def test_pipeline_settings_from_config() -> None:
    settings = PipelineSettings.from_config(
        {
            "paths": {"workspace_root": "/srv/ws", "results_root": "/srv/out"},
            "retry": {"step": {"maximum_attempts": 5}},
            "restart": {"restartable_classes": ["network"]},
            "worker": {"lease_seconds": 45.0},
        }
    )

    assert settings.workspace_root == Path("/srv/ws")
    assert settings.step_retry.maximum_attempts == 5
    assert settings.space_retry.backoff_coefficient == 1.5
    assert settings.lease_seconds == 45.0
    assert settings.restartable_classes == frozenset({FailureClass.NETWORK})


def test_pipeline_settings_from_invalid_config_raises() -> None:
    with pytest.raises(ConfigValidationError):
        PipelineSettings.from_config({"timeouts": {"scan_seconds": -5.0}})


def test_restartability_rules() -> None:
    settings = PipelineSettings(
        workspace_root=Path("ws"),
        results_root=Path("out"),
        restartable_classes=frozenset({FailureClass.NETWORK}),
    )

    assert settings.is_restartable(FailureClass.STORAGE)
    assert settings.is_restartable(FailureClass.NETWORK)
    assert not settings.is_restartable(FailureClass.RESOURCE)
    assert not settings.is_restartable(FailureClass.DEPLOYMENT)
    assert not settings.is_restartable(FailureClass.APPLICATION)


def test_request_timeouts_override_settings() -> None:
    settings = PipelineSettings(workspace_root=Path("ws"), results_root=Path("out"))
    request = ScanRequest(
        app_id="a",
        component="b",
        build_id="1",
        tool_kind="gitleaks",
        repository_url="file:///tmp/repo",
        config=ScanConfig(scan_timeout_seconds=120, run_timeout_seconds=7200),
    )
    plain = ScanRequest(
        app_id="a",
        component="b",
        build_id="2",
        tool_kind="gitleaks",
        repository_url="file:///tmp/repo",
    )

    assert settings.scan_timeout_for(request) == 120.0
    assert settings.run_timeout_for(request) == 7200.0
    assert settings.scan_timeout_for(plain) == settings.scan_seconds
    assert settings.run_timeout_for(plain) == settings.run_seconds


def test_backoff_is_monotonic_and_capped() -> None:
    hypothesis = pytest.importorskip("hypothesis")
    st = pytest.importorskip("hypothesis.strategies")

    @hypothesis.settings(max_examples=200, deadline=None)
    @hypothesis.given(
        initial=st.floats(min_value=0.0, max_value=1_000.0),
        coefficient=st.floats(min_value=1.0, max_value=10.0),
        extra=st.floats(min_value=0.0, max_value=10_000.0),
        attempts=st.integers(min_value=1, max_value=40),
    )
    def check(initial: float, coefficient: float, extra: float, attempts: int) -> None:
        policy = RetryPolicy(initial, coefficient, initial + extra, attempts)
        delays = policy.delays()
        assert len(delays) == attempts - 1
        assert all(0.0 <= delay <= policy.maximum_interval_seconds for delay in delays)
        assert all(left <= right for left, right in zip(delays, delays[1:], strict=False))

    check()
