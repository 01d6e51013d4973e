"""Worker process: deployment preflight plus lane-bounded Run execution."""

from scan_orchestrator.worker.deployment import (
    DeploymentCheck,
    DeploymentHealthCheck,
    DeploymentReport,
)
from scan_orchestrator.worker.worker import Worker, WorkerStats

__all__ = [
    "DeploymentCheck",
    "DeploymentHealthCheck",
    "DeploymentReport",
    "Worker",
    "WorkerStats",
]
