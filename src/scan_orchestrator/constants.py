"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

_MIB: Final[int] = 1024 * 1024
_GIB: Final[int] = 1024 * _MIB

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1
SUMMARY_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
WORKSPACES_DIR: Final[PurePosixPath] = PurePosixPath("workspaces")
RESULTS_DIR: Final[PurePosixPath] = PurePosixPath("results")

# Per-run workspace layout.
REPO_DIRNAME: Final[str] = "repo"
PARTIAL_REPO_DIRNAME: Final[str] = ".repo.partial"
OUTPUT_DIRNAME: Final[str] = "output"
WORKSPACE_MARKER_FILENAME: Final[str] = ".workspace.json"
STORAGE_PROBE_PREFIX: Final[str] = ".storage-health-check-"
SUMMARY_FILENAME: Final[str] = "summary.json"

# Admission heuristics. Estimates gate admission only; they never bound real usage.
DEFAULT_BASE_REPOSITORY_BYTES: Final[int] = 4 * _GIB
DEFAULT_FULL_HISTORY_OVERHEAD_BYTES: Final[int] = 2 * _GIB
DEFAULT_SINGLE_BRANCH_OVERHEAD_BYTES: Final[int] = 500 * _MIB
DEFAULT_SHALLOW_OVERHEAD_BYTES: Final[int] = 100 * _MIB
DEFAULT_SPARSE_CHECKOUT_FRACTION: Final[float] = 0.5
DEFAULT_TOOL_FOOTPRINT_BYTES: Final[int] = 100 * _MIB + 10 * 1024
DEFAULT_OUTPUT_BUDGET_BYTES: Final[int] = 500 * _MIB
DEFAULT_TEMP_BUDGET_BYTES: Final[int] = 200 * _MIB
DEFAULT_MAX_WORKSPACE_BYTES: Final[int] = 10 * _GIB
DEFAULT_MIN_FREE_FRACTION: Final[float] = 0.25

# Timeouts (seconds).
DEFAULT_ADMISSION_TIMEOUT_SECONDS: Final[int] = 60
DEFAULT_CLONE_TIMEOUT_SECONDS: Final[int] = 600
DEFAULT_CLONE_HEARTBEAT_SECONDS: Final[int] = 30
DEFAULT_SCAN_TIMEOUT_SECONDS: Final[int] = 1800
DEFAULT_SCAN_HEARTBEAT_SECONDS: Final[int] = 60
DEFAULT_PERSIST_TIMEOUT_SECONDS: Final[int] = 120
DEFAULT_RECLAIM_TIMEOUT_SECONDS: Final[int] = 300
DEFAULT_RUN_TIMEOUT_SECONDS: Final[int] = 4 * 60 * 60
DEFAULT_CANCELLATION_GRACE_SECONDS: Final[int] = 30

# Lanes.
DEFAULT_LANE: Final[str] = "default"
PRIORITY_LANE: Final[str] = "priority"
LONG_RUNNING_LANE: Final[str] = "long-running"
LONG_RUNNING_SCAN_THRESHOLD_SECONDS: Final[int] = 30 * 60
LONG_RUNNING_RUN_THRESHOLD_SECONDS: Final[int] = 60 * 60
DEFAULT_QUEUE_PREFIX: Final[str] = "scan-pipeline"

# Restart coordination.
DEFAULT_RESTART_INTERVAL_SECONDS: Final[int] = 30 * 60
RESTART_ID_SEPARATOR: Final[str] = "-restart-"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ADMISSION_TIMEOUT_SECONDS",
    "DEFAULT_BASE_REPOSITORY_BYTES",
    "DEFAULT_CANCELLATION_GRACE_SECONDS",
    "DEFAULT_CLONE_HEARTBEAT_SECONDS",
    "DEFAULT_CLONE_TIMEOUT_SECONDS",
    "DEFAULT_FULL_HISTORY_OVERHEAD_BYTES",
    "DEFAULT_LANE",
    "DEFAULT_MAX_WORKSPACE_BYTES",
    "DEFAULT_MIN_FREE_FRACTION",
    "DEFAULT_OUTPUT_BUDGET_BYTES",
    "DEFAULT_PERSIST_TIMEOUT_SECONDS",
    "DEFAULT_QUEUE_PREFIX",
    "DEFAULT_RECLAIM_TIMEOUT_SECONDS",
    "DEFAULT_RESTART_INTERVAL_SECONDS",
    "DEFAULT_RUN_TIMEOUT_SECONDS",
    "DEFAULT_SCAN_HEARTBEAT_SECONDS",
    "DEFAULT_SCAN_TIMEOUT_SECONDS",
    "DEFAULT_SHALLOW_OVERHEAD_BYTES",
    "DEFAULT_SINGLE_BRANCH_OVERHEAD_BYTES",
    "DEFAULT_SPARSE_CHECKOUT_FRACTION",
    "DEFAULT_TEMP_BUDGET_BYTES",
    "DEFAULT_TOOL_FOOTPRINT_BYTES",
    "LONG_RUNNING_LANE",
    "LONG_RUNNING_RUN_THRESHOLD_SECONDS",
    "LONG_RUNNING_SCAN_THRESHOLD_SECONDS",
    "OUTPUT_DIRNAME",
    "PARTIAL_REPO_DIRNAME",
    "PRIORITY_LANE",
    "REPO_DIRNAME",
    "RESTART_ID_SEPARATOR",
    "RESULTS_DIR",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "STORAGE_PROBE_PREFIX",
    "SUMMARY_FILENAME",
    "SUMMARY_SCHEMA_VERSION",
    "WORKSPACES_DIR",
    "WORKSPACE_MARKER_FILENAME",
]
