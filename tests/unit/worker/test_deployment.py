"""
scan-orchestrator — test suite for the deployment preflight.

File: tests/unit/worker/test_deployment.py
Last updated: 2026-10-17

Purpose
- Validate root, git and tool checks, the failure types raised by ``require`` and
  the report shape consumed by ``scanorch doctor``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from scan_orchestrator.domain.errors import DeploymentFailureError
from scan_orchestrator.integration_plane.storage_health import StorageHealth
from scan_orchestrator.worker.deployment import DeploymentHealthCheck


def _which_all(name: str) -> str | None:
    return f"/usr/bin/{name}"


def _which_none(name: str) -> str | None:
    return None


class UnhealthyProbe:
    def require_healthy(self, path: str | Path) -> None:
        return None

    def check(self, path: str | Path) -> StorageHealth:
        return StorageHealth(str(path), False, "Read-only file system", datetime.now(UTC))


def _roots(tmp_path: Path) -> tuple[Path, Path]:
    workspaces = tmp_path / "workspaces"
    results = tmp_path / "results"
    workspaces.mkdir()
    results.mkdir()
    return workspaces, results


def test_healthy_host_passes_every_check(tmp_path: Path) -> None:
    workspaces, results = _roots(tmp_path)
    check = DeploymentHealthCheck(
        workspace_root=workspaces,
        results_root=results,
        tool_binaries={"gitleaks": "gitleaks"},
        which=_which_all,
    )

    report = check.require()

    assert report.healthy is True
    assert [c.name for c in report.checks] == [
        "workspace_root",
        "results_root",
        "git",
        "tool:gitleaks",
    ]
    assert report.failures == ()


def test_missing_git_is_reported(tmp_path: Path) -> None:
    workspaces, results = _roots(tmp_path)
    check = DeploymentHealthCheck(
        workspace_root=workspaces, results_root=results, which=_which_none
    )

    with pytest.raises(DeploymentFailureError) as excinfo:
        check.require()

    assert excinfo.value.failure_type == "missing_git"


def test_missing_tool_binary_is_reported(tmp_path: Path) -> None:
    workspaces, results = _roots(tmp_path)

    def which(name: str) -> str | None:
        return "/usr/bin/git" if name == "git" else None

    check = DeploymentHealthCheck(
        workspace_root=workspaces,
        results_root=results,
        tool_binaries={"semgrep": "semgrep"},
        which=which,
    )

    report = check.run()

    assert report.healthy is False
    assert [c.name for c in report.failures] == ["tool:semgrep"]
    with pytest.raises(DeploymentFailureError) as excinfo:
        check.require()
    assert excinfo.value.failure_type == "missing_tool_binary"


def test_tool_given_as_path_must_be_executable(tmp_path: Path) -> None:
    workspaces, results = _roots(tmp_path)
    script = tmp_path / "scanner.sh"
    script.write_text("#!/bin/sh\n", encoding="utf-8")

    check = DeploymentHealthCheck(
        workspace_root=workspaces,
        results_root=results,
        tool_binaries={"custom": str(script)},
        which=_which_all,
    )
    assert check.run().healthy is False

    script.chmod(0o755)
    assert check.run().healthy is True


def test_missing_root_fails_unless_created(tmp_path: Path) -> None:
    kwargs = {
        "workspace_root": tmp_path / "missing-workspaces",
        "results_root": tmp_path / "missing-results",
        "which": _which_all,
    }

    with pytest.raises(DeploymentFailureError) as excinfo:
        DeploymentHealthCheck(**kwargs).require()  # type: ignore[arg-type]
    assert excinfo.value.failure_type == "unusable_workspace_root"

    report = DeploymentHealthCheck(create_missing=True, **kwargs).run()  # type: ignore[arg-type]
    assert report.healthy is True
    assert (tmp_path / "missing-results").is_dir()


def test_root_that_is_a_file_fails(tmp_path: Path) -> None:
    workspaces, _ = _roots(tmp_path)
    results = tmp_path / "results.txt"
    results.write_text("x", encoding="utf-8")

    report = DeploymentHealthCheck(
        workspace_root=workspaces, results_root=results, which=_which_all
    ).run()

    assert [c.name for c in report.failures] == ["results_root"]
    assert "not a directory" in report.failures[0].detail


def test_unwritable_storage_fails_the_root_checks(tmp_path: Path) -> None:
    workspaces, results = _roots(tmp_path)

    report = DeploymentHealthCheck(
        workspace_root=workspaces,
        results_root=results,
        which=_which_all,
        storage_probe=UnhealthyProbe(),
    ).run()

    assert [c.name for c in report.failures] == ["workspace_root", "results_root"]
    assert "Read-only file system" in report.failures[0].detail


def test_from_config_lists_enabled_tools_only(tmp_path: Path) -> None:
    config = {
        "paths": {
            "workspace_root": str(tmp_path / "ws"),
            "results_root": str(tmp_path / "res"),
            "state_db": str(tmp_path / "state.sqlite3"),
        },
        "tools": {
            "gitleaks": {"command": ["gitleaks", "detect"], "enabled": False},
            "trufflehog": {"command": ["trufflehog", "git", "{worktree}"]},
        },
    }

    report = DeploymentHealthCheck.from_config(config, which=_which_all, create_missing=True).run()

    assert [c.name for c in report.checks][-1] == "tool:trufflehog"
    assert "tool:gitleaks" not in {c.name for c in report.checks}
    assert report.healthy is True


def test_report_to_dict(tmp_path: Path) -> None:
    workspaces, results = _roots(tmp_path)
    report = DeploymentHealthCheck(
        workspace_root=workspaces, results_root=results, which=_which_none
    ).run()

    payload = report.to_dict()

    assert payload["healthy"] is False
    checks = payload["checks"]
    assert isinstance(checks, list)
    assert {"name": "git", "status": "fail", "detail": "git not found on PATH"} in checks
