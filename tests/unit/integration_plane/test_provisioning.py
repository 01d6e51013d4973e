"""
scan-orchestrator — test suite for repository provisioning.

File: tests/unit/integration_plane/test_provisioning.py
Last updated: 2026-10-17

Purpose
- Validate clone-or-reuse convergence, replacement of foreign trees, ref checkout,
  best-effort sparse checkout and the storage re-probe on fatal git exits.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from scan_orchestrator.domain.errors import StorageFailureError
from scan_orchestrator.domain.models import CloneStrategy, ScanConfig, ScanRequest
from scan_orchestrator.integration_plane.git_engine import GitCommandError, GitEngine
from scan_orchestrator.integration_plane.provisioning import RepositoryProvisioner
from scan_orchestrator.integration_plane.storage_health import StorageHealth
from scan_orchestrator.integration_plane.workspace_manager import WorkspaceManager

RUN_ID = "payments-api-1-gitleaks"


class FakeProbe:
    def __init__(self, *, upfront_healthy: bool = True, recheck_healthy: bool = True) -> None:
        self.upfront_healthy = upfront_healthy
        self.recheck_healthy = recheck_healthy
        self.checks = 0

    def require_healthy(self, path: str | Path) -> None:
        if not self.upfront_healthy:
            raise StorageFailureError(str(path), "Read-only file system")

    def check(self, path: str | Path) -> StorageHealth:
        self.checks += 1
        reason = None if self.recheck_healthy else "Input/output error"
        return StorageHealth(str(path), self.recheck_healthy, reason, datetime.now(UTC))


def _request(url: str, **kwargs: object) -> ScanRequest:
    config = kwargs.pop("config", ScanConfig())
    return ScanRequest(
        app_id="payments",
        component="api",
        build_id="1",
        tool_kind="gitleaks",
        repository_url=url,
        config=config,  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


def _provisioner(tmp_path: Path, probe: FakeProbe | None = None) -> RepositoryProvisioner:
    return RepositoryProvisioner(
        WorkspaceManager(tmp_path / "workspaces"),
        git_engine=GitEngine(),
        storage_probe=probe if probe is not None else FakeProbe(),
    )


def test_fresh_clone_lands_in_repo_dir(tmp_path: Path, source_url: str) -> None:
    provisioner = _provisioner(tmp_path)

    result = provisioner.provision(RUN_ID, _request(source_url))

    repo = Path(result.repo_path)
    assert repo == tmp_path / "workspaces" / RUN_ID / "repo"
    assert (repo / "README.md").is_file()
    assert result.reused is False
    assert result.compacted is True
    assert result.size_bytes > 0
    assert not (repo.parent / ".repo.partial").exists()
    marker = WorkspaceManager(tmp_path / "workspaces").read_marker(RUN_ID)
    assert marker is not None and marker.attempt == 1


def test_second_provision_reuses_the_tree(tmp_path: Path, source_url: str) -> None:
    provisioner = _provisioner(tmp_path)
    provisioner.provision(RUN_ID, _request(source_url))

    again = provisioner.provision(RUN_ID, _request(source_url + ".git/"), attempt=2)

    assert again.reused is True
    assert again.compacted is False
    marker = WorkspaceManager(tmp_path / "workspaces").read_marker(RUN_ID)
    assert marker is not None and marker.attempt == 2


def test_tree_from_another_origin_is_replaced(
    tmp_path: Path,
    source_url: str,
    run_git: Callable[..., subprocess.CompletedProcess[str]],
) -> None:
    repo = tmp_path / "workspaces" / RUN_ID / "repo"
    repo.mkdir(parents=True)
    run_git(repo, "init", "--quiet")
    run_git(repo, "remote", "add", "origin", "https://git.example.invalid/other.git")
    (repo / "stale.txt").write_text("stale\n", encoding="utf-8")

    result = _provisioner(tmp_path).provision(RUN_ID, _request(source_url))

    assert result.reused is False
    assert not (repo / "stale.txt").exists()
    assert (repo / "README.md").is_file()


def test_non_repository_directory_is_replaced(tmp_path: Path, source_url: str) -> None:
    repo = tmp_path / "workspaces" / RUN_ID / "repo"
    repo.mkdir(parents=True)
    (repo / "junk.bin").write_bytes(b"\x00" * 16)
    partial = repo.parent / ".repo.partial"
    partial.mkdir()

    result = _provisioner(tmp_path).provision(RUN_ID, _request(source_url))

    assert result.reused is False
    assert not (repo / "junk.bin").exists()
    assert not partial.exists()


def test_commit_sha_is_checked_out(
    tmp_path: Path,
    source_repo: Path,
    source_url: str,
    run_git: Callable[..., subprocess.CompletedProcess[str]],
) -> None:
    first = run_git(source_repo, "rev-list", "--max-parents=0", "HEAD").stdout.strip()
    request = _request(
        source_url,
        commit_sha=first,
        config=ScanConfig(clone_strategy=CloneStrategy.FULL),
    )

    result = _provisioner(tmp_path).provision(RUN_ID, request)

    assert result.ref == first
    assert GitEngine().head_commit(Path(result.repo_path)) == first
    assert not (Path(result.repo_path) / "src" / "app.py").exists()


def test_single_branch_clone_of_named_branch(tmp_path: Path, source_url: str) -> None:
    request = _request(
        source_url,
        branch="main",
        config=ScanConfig(clone_strategy=CloneStrategy.SHALLOW_SINGLE_BRANCH),
    )

    result = _provisioner(tmp_path).provision(RUN_ID, request)

    assert result.ref == "main"
    assert (Path(result.repo_path) / "src" / "app.py").is_file()


def test_sparse_checkout_is_applied(tmp_path: Path, source_url: str) -> None:
    request = _request(
        source_url,
        config=ScanConfig(clone_strategy=CloneStrategy.FULL, sparse_checkout_paths=("src/",)),
    )

    result = _provisioner(tmp_path).provision(RUN_ID, request)

    assert result.sparse_applied is True
    assert (Path(result.repo_path) / "src" / "app.py").is_file()
    assert not (Path(result.repo_path) / "README.md").exists()


def test_unhealthy_storage_fails_before_cloning(tmp_path: Path, source_url: str) -> None:
    provisioner = _provisioner(tmp_path, FakeProbe(upfront_healthy=False))

    with pytest.raises(StorageFailureError):
        provisioner.provision(RUN_ID, _request(source_url))

    assert not (tmp_path / "workspaces" / RUN_ID).exists()


def test_fatal_git_exit_with_failed_probe_is_storage_failure(tmp_path: Path) -> None:
    probe = FakeProbe(recheck_healthy=False)
    missing = (tmp_path / "missing-origin").as_uri()

    with pytest.raises(StorageFailureError, match="Input/output error"):
        _provisioner(tmp_path, probe).provision(RUN_ID, _request(missing))

    assert probe.checks == 1


def test_fatal_git_exit_with_healthy_probe_propagates(tmp_path: Path) -> None:
    probe = FakeProbe()
    missing = (tmp_path / "missing-origin").as_uri()

    with pytest.raises(GitCommandError):
        _provisioner(tmp_path, probe).provision(RUN_ID, _request(missing))

    assert probe.checks == 1
