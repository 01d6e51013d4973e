"""
scan-orchestrator — domain layer.

File: src/scan_orchestrator/domain/__init__.py

Purpose
- Domain types shared across planes: ScanRequest, ScanConfig, Run, ScanResult,
  the failure taxonomy and run identity helpers.
- Free of IO side effects.
"""

from scan_orchestrator.domain.errors import (
    ApplicationFailureError,
    DeploymentFailureError,
    InsufficientSpaceError,
    NetworkFailureError,
    ResourceExhaustionError,
    RunCancelledError,
    RunTimeoutError,
    ScanPipelineError,
    StepFailure,
    StepTimeoutError,
    StorageFailureError,
)
from scan_orchestrator.domain.ids import derive_run_id, restart_run_id
from scan_orchestrator.domain.models import (
    CloneStrategy,
    FailureClass,
    PipelineStep,
    ProvisionResult,
    Run,
    RunOutcome,
    RunStatus,
    ScanConfig,
    ScanPriority,
    ScanRequest,
    ScanResult,
    ScanSummary,
)

__all__ = [
    "ApplicationFailureError",
    "CloneStrategy",
    "DeploymentFailureError",
    "FailureClass",
    "InsufficientSpaceError",
    "NetworkFailureError",
    "PipelineStep",
    "ProvisionResult",
    "ResourceExhaustionError",
    "Run",
    "RunCancelledError",
    "RunOutcome",
    "RunStatus",
    "RunTimeoutError",
    "ScanConfig",
    "ScanPipelineError",
    "ScanPriority",
    "ScanRequest",
    "ScanResult",
    "ScanSummary",
    "StepFailure",
    "StepTimeoutError",
    "StorageFailureError",
    "derive_run_id",
    "restart_run_id",
]
