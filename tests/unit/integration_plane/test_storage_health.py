"""
scan-orchestrator — test suite for the storage health probe.

File: tests/unit/integration_plane/test_storage_health.py
Last updated: 2026-10-17

Purpose
- Validate that the probe leaves no residue on healthy storage and reports failed
  storage as ``StorageFailureError`` while other OS errors stay distinct.
"""

from __future__ import annotations

import errno
import os
from pathlib import Path

import pytest

from scan_orchestrator.domain.errors import StorageFailureError
from scan_orchestrator.integration_plane.storage_health import StorageProbe


def test_healthy_directory_passes_without_residue(tmp_path: Path) -> None:
    root = tmp_path / "workspaces"

    health = StorageProbe().check(root)

    assert health.healthy is True
    assert health.reason is None
    assert root.is_dir()
    assert list(root.iterdir()) == []


def test_failed_sync_is_a_storage_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def failing_fsync(fd: int) -> None:
        raise OSError(errno.EIO, "Input/output error")

    monkeypatch.setattr(os, "fsync", failing_fsync)

    with pytest.raises(StorageFailureError) as excinfo:
        StorageProbe().require_healthy(tmp_path)

    assert "Input/output error" in excinfo.value.reason


def test_check_reports_storage_failure_reason(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def failing_fsync(fd: int) -> None:
        raise OSError(errno.EROFS, "Read-only file system")

    monkeypatch.setattr(os, "fsync", failing_fsync)

    health = StorageProbe().check(tmp_path)

    assert health.healthy is False
    assert health.reason is not None and "Read-only" in health.reason


def test_non_storage_os_error_propagates_from_require_healthy(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(OSError) as excinfo:
        StorageProbe().require_healthy(blocker / "workspaces")

    assert not isinstance(excinfo.value, StorageFailureError)
    health = StorageProbe().check(blocker / "workspaces")
    assert health.healthy is False
