"""
scan-orchestrator — test suite for the restart coordinator.

File: tests/unit/control_plane/test_restart.py
Last updated: 2026-10-17

Purpose
- Validate candidate selection by stored failure class, the once-per-batch storage
  probe, new-id versus reuse resubmission and supersession bookkeeping.
"""

from __future__ import annotations

import errno
import threading
from datetime import UTC, datetime
from pathlib import Path

import pytest

from scan_orchestrator.control_plane.controller import PipelineController
from scan_orchestrator.control_plane.restart import (
    RestartCoordinator,
    RestartSettings,
    RestartStatus,
)
from scan_orchestrator.domain.models import FailureClass, RunStatus, ScanConfig, ScanRequest
from scan_orchestrator.integration_plane.git_engine import CommandResult, GitEngine
from scan_orchestrator.integration_plane.storage_health import StorageHealth
from scan_orchestrator.substrate.memory import InMemorySubstrate


class FakeProbe:
    def __init__(self, healthy: bool = True) -> None:
        self.healthy = healthy
        self.calls = 0

    def require_healthy(self, path: str | Path) -> None:
        raise NotImplementedError

    def check(self, path: str | Path) -> StorageHealth:
        self.calls += 1
        reason = None if self.healthy else "Read-only file system"
        return StorageHealth(str(path), self.healthy, reason, datetime.now(UTC))


def _controller(tmp_path: Path, substrate: InMemorySubstrate) -> PipelineController:
    config = {
        "paths": {
            "workspace_root": str(tmp_path / "workspaces"),
            "results_root": str(tmp_path / "results"),
        }
    }
    return PipelineController.from_config(config, substrate)


def _request(build_id: str) -> ScanRequest:
    return ScanRequest(
        app_id="payments",
        component="api",
        build_id=build_id,
        tool_kind="gitleaks",
        repository_url="file:///srv/git/payments.git",
        commit_sha="a" * 40,
    )


def _failed(
    controller: PipelineController,
    build_id: str,
    failure_class: FailureClass,
    *,
    restart_required: bool = True,
) -> str:
    submitted = controller.submit(_request(build_id))
    controller.substrate.complete_run(
        submitted.run_id,
        status=RunStatus.FAILED,
        success=False,
        failure_class=failure_class,
        restart_required=restart_required,
    )
    return submitted.run_id


def _coordinator(
    controller: PipelineController,
    probe: FakeProbe,
    **settings: object,
) -> RestartCoordinator:
    return RestartCoordinator(
        controller,
        settings=RestartSettings(**settings),  # type: ignore[arg-type]
        storage_probe=probe,
        clock_ms=lambda: 1_700_000_000_000,
    )


def test_storage_failures_restart_with_new_id(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    original = _failed(controller, "1", FailureClass.STORAGE)
    probe = FakeProbe()

    report = _coordinator(controller, probe).run_once()

    assert [item.status for item in report.outcomes] == [RestartStatus.RESTARTED]
    new_run_id = report.outcomes[0].new_run_id
    assert new_run_id == f"{original}-restart-1700000000000"
    assert substrate.require_run(original).superseded_by == new_run_id
    restarted = substrate.require_run(new_run_id)
    assert restarted.status is RunStatus.PENDING
    assert restarted.restarted_from == original
    assert substrate.query_run_input(new_run_id) == _request("1")
    assert probe.calls == 1


def test_superseded_runs_are_not_restarted_twice(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    _failed(controller, "1", FailureClass.STORAGE)
    coordinator = _coordinator(controller, FakeProbe())

    first = coordinator.run_once()
    second = coordinator.run_once()

    assert len(first.restarted) == 1
    assert second.outcomes == ()


def test_unhealthy_storage_skips_storage_runs_and_checks_once(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    _failed(controller, "1", FailureClass.STORAGE)
    _failed(controller, "2", FailureClass.STORAGE)
    _failed(controller, "3", FailureClass.NETWORK)
    probe = FakeProbe(healthy=False)

    report = _coordinator(controller, probe, failure_type="all").run_once()

    statuses = {item.run_id: item.status for item in report.outcomes}
    assert statuses == {
        "payments-api-1-gitleaks": RestartStatus.SKIPPED,
        "payments-api-2-gitleaks": RestartStatus.SKIPPED,
        "payments-api-3-gitleaks": RestartStatus.RESTARTED,
    }
    assert probe.calls == 1
    assert report.storage_health is not None and not report.storage_health.healthy
    assert "storage still unhealthy" in report.skipped[0].reason


def test_skipped_storage_runs_do_not_use_up_the_batch(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    for build_id in ("1", "2", "3"):
        _failed(controller, build_id, FailureClass.STORAGE)
    network = _failed(controller, "4", FailureClass.NETWORK)
    resource = _failed(controller, "5", FailureClass.RESOURCE)
    probe = FakeProbe(healthy=False)

    report = _coordinator(controller, probe, failure_type="all", batch_limit=2).run_once()

    assert sorted(item.run_id for item in report.restarted) == [network, resource]
    assert len(report.skipped) == 2
    assert {item.failure_class for item in report.skipped} == {FailureClass.STORAGE}
    assert probe.calls == 1


def test_batch_limit_caps_resubmissions_across_classes(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    _failed(controller, "1", FailureClass.STORAGE)
    _failed(controller, "2", FailureClass.NETWORK)
    _failed(controller, "3", FailureClass.RESOURCE)

    report = _coordinator(controller, FakeProbe(), failure_type="all", batch_limit=2).run_once()

    assert len(report.restarted) == 2
    assert report.skipped == ()


def test_failure_type_filter_uses_stored_class(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    _failed(controller, "1", FailureClass.NETWORK)
    _failed(controller, "2", FailureClass.STORAGE)
    probe = FakeProbe()

    report = _coordinator(controller, probe, failure_type="network").run_once()

    assert [item.run_id for item in report.restarted] == ["payments-api-1-gitleaks"]
    assert probe.calls == 0


def test_runs_without_restart_flag_are_ignored(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    _failed(controller, "1", FailureClass.STORAGE, restart_required=False)

    report = _coordinator(controller, FakeProbe()).run_once()

    assert report.outcomes == ()


def test_verify_storage_can_be_disabled(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    _failed(controller, "1", FailureClass.STORAGE)
    probe = FakeProbe(healthy=False)

    report = _coordinator(controller, probe, verify_storage=False).run_once()

    assert len(report.restarted) == 1
    assert probe.calls == 0
    assert report.storage_health is None


def test_reuse_mode_starts_next_attempt_of_same_identity(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    original = _failed(controller, "1", FailureClass.STORAGE)

    report = _coordinator(controller, FakeProbe(), use_new_run_id=False).run_once()

    assert report.outcomes[0].new_run_id == original
    run = substrate.require_run(original)
    assert run.attempt == 2
    assert run.status is RunStatus.PENDING
    assert run.superseded_by is None
    assert [item.status for item in substrate.run_history(original)] == [RunStatus.FAILED]


def test_report_serializes(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    _failed(controller, "1", FailureClass.STORAGE)

    payload = _coordinator(controller, FakeProbe()).run_once().to_dict()

    assert payload["restarted"] == 1
    assert payload["skipped"] == 0
    assert isinstance(payload["outcomes"], list)


def test_run_forever_honours_max_cycles(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    coordinator = _coordinator(controller, FakeProbe(), interval_seconds=0.01)

    reports = coordinator.run_forever(max_cycles=3)

    assert len(reports) == 3


def test_run_forever_stops_on_event(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    controller = _controller(tmp_path, substrate)
    stop = threading.Event()
    stop.set()

    assert _coordinator(controller, FakeProbe()).run_forever(stop) == []


@pytest.mark.parametrize(
    "kwargs",
    [{"interval_seconds": 0}, {"failure_type": "cosmic-rays"}, {"batch_limit": 0}],
)
def test_settings_validation(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        RestartSettings(**kwargs)  # type: ignore[arg-type]


def test_settings_from_config() -> None:
    settings = RestartSettings.from_config(
        {"restart": {"failure_type": "all", "use_new_run_id": False}}
    )

    assert settings.selected_class is None
    assert settings.use_new_run_id is False
    assert settings.interval_seconds == 1800.0


class EioOnCloneGit(GitEngine):
    """Real git engine whose clone fails the way a dropped NFS mount does."""

    def clone(self, url: str, destination: Path, **kwargs: object) -> CommandResult:
        raise OSError(errno.EIO, "Input/output error", str(destination))


def test_restart_after_storage_failure_keeps_request_bytes(tmp_path: Path) -> None:
    substrate = InMemorySubstrate()
    config = {
        "paths": {
            "workspace_root": str(tmp_path / "workspaces"),
            "results_root": str(tmp_path / "results"),
        },
        "admission": {
            "base_repository_bytes": 1024,
            "full_history_overhead_bytes": 0,
            "single_branch_overhead_bytes": 0,
            "shallow_overhead_bytes": 0,
            "tool_footprint_bytes": 0,
            "output_budget_bytes": 0,
            "temp_budget_bytes": 0,
            "max_workspace_bytes": 1048576,
            "min_free_fraction": 0.0,
        },
    }
    controller = PipelineController.from_config(
        config, substrate, git_engine=EioOnCloneGit()
    )
    request = ScanRequest(
        app_id="payments",
        component="api",
        build_id="9",
        tool_kind="gitleaks",
        repository_url="https://git.example.invalid/payments.git",
        branch="release/2026.10",
        config=ScanConfig(
            sparse_checkout_paths=("src/", "config/"),
            tool_options={"redact": "true", "log-level": "warn"},
        ),
    )
    submitted = controller.submit(request)
    captured = substrate._load_request_json(submitted.run_id)

    failed = controller.execute(submitted.run_id)

    assert failed.status is RunStatus.FAILED
    assert failed.failure_class is FailureClass.STORAGE
    assert failed.restart_required is True
    assert failed.metadata["workflowRestartRequired"] == "true"

    report = _coordinator(controller, FakeProbe()).run_once()

    new_run_id = report.outcomes[0].new_run_id
    assert new_run_id is not None
    assert captured is not None
    assert substrate._load_request_json(failed.run_id) == captured
    assert substrate._load_request_json(new_run_id) == captured
    assert substrate.query_run_input(new_run_id) == request
