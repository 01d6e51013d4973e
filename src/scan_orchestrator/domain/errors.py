"""
scan-orchestrator — failure taxonomy.

File: src/scan_orchestrator/domain/errors.py

Purpose
- Typed exceptions raised by pipeline steps. Each typed error declares the
  failure class the controller and restart coordinator act upon.

Functionality
- Storage, network, resource (including insufficient space and timeouts),
  deployment and application errors.
- ``StepFailure`` wraps whatever the last attempt of a step raised once the
  substrate gives up on it.
- Storage error signatures shared by the classifier and the storage probe.
"""

from __future__ import annotations

import errno
from collections.abc import Mapping
from typing import ClassVar, Final

from scan_orchestrator.domain.models import FailureClass

STORAGE_FAILURE_SIGNATURES: Final[tuple[str, ...]] = (
    "read-only file system",
    "input/output error",
    "i/o error",
    "stale file handle",
    "stale nfs file handle",
    "transport endpoint is not connected",
    "broken pipe",
    "no space left on device",
    "device or resource busy",
    "mount point",
)

# Only meaningful on an ``OSError`` raised at the storage path; git and ssh
# print the same words for authentication failures.
OS_ERROR_ONLY_SIGNATURES: Final[tuple[str, ...]] = ("permission denied",)


STORAGE_ERRNOS: Final[frozenset[int]] = frozenset(
    {
        errno.EROFS,
        errno.EIO,
        errno.ESTALE,
        errno.ENOTCONN,
        errno.EPIPE,
        errno.EACCES,
        errno.EPERM,
        errno.ENOSPC,
    }
)


def matches_storage_signature(text: str) -> bool:
    lowered = text.lower()
    return any(signature in lowered for signature in STORAGE_FAILURE_SIGNATURES)


def is_storage_os_error(exc: OSError) -> bool:
    """True when an ``OSError`` looks like the storage under it failed."""

    if exc.errno in STORAGE_ERRNOS or matches_storage_signature(str(exc)):
        return True
    lowered = str(exc).lower()
    return any(signature in lowered for signature in OS_ERROR_ONLY_SIGNATURES)


class ScanPipelineError(Exception):
    """Base class for failures the pipeline knows how to classify."""

    failure_class: ClassVar[FailureClass] = FailureClass.APPLICATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def metadata(self) -> dict[str, str]:
        return {}


class StorageFailureError(ScanPipelineError):
    failure_class = FailureClass.STORAGE

    def __init__(self, storage_path: str, reason: str) -> None:
        super().__init__(f"storage failure at {storage_path}: {reason}")
        self.storage_path = storage_path
        self.reason = reason

    def metadata(self) -> dict[str, str]:
        return {
            "storageFailure": "true",
            "storageFailurePath": self.storage_path,
            "storageFailureReason": self.reason,
            "workflowRestartRequired": "true",
        }


class NetworkFailureError(ScanPipelineError):
    failure_class = FailureClass.NETWORK

    def __init__(self, service: str, reason: str) -> None:
        super().__init__(f"network failure contacting {service}: {reason}")
        self.service = service
        self.reason = reason

    def metadata(self) -> dict[str, str]:
        return {
            "networkFailure": "true",
            "networkFailureService": self.service,
            "networkFailureReason": self.reason,
        }


class ResourceExhaustionError(ScanPipelineError):
    failure_class = FailureClass.RESOURCE

    def __init__(self, resource_type: str, reason: str) -> None:
        super().__init__(f"{resource_type} exhausted: {reason}")
        self.resource_type = resource_type
        self.reason = reason

    def metadata(self) -> dict[str, str]:
        return {
            "resourceExhaustion": "true",
            "resourceType": self.resource_type,
            "resourceFailureReason": self.reason,
        }


class InsufficientSpaceError(ResourceExhaustionError):
    """Admission found less free space than the estimate requires."""

    def __init__(
        self,
        available: int,
        required: int,
        breakdown: Mapping[str, int] | None = None,
    ) -> None:
        super().__init__(
            "disk",
            f"insufficient space: available={available} required={required}",
        )
        self.available = available
        self.required = required
        self.breakdown: dict[str, int] = dict(breakdown or {})

    def metadata(self) -> dict[str, str]:
        payload = super().metadata()
        payload["spaceAvailableBytes"] = str(self.available)
        payload["spaceRequiredBytes"] = str(self.required)
        return payload


class StepTimeoutError(ResourceExhaustionError):
    """A step overran its timeout or heartbeat window.

    ``still_running`` is set when the abandoned attempt did not exit within the
    grace period; its side effects may still be landing, so the step must not
    be retried in the same workspace.
    """

    def __init__(self, step: str, reason: str, *, still_running: bool = False) -> None:
        super().__init__("time", f"step {step} {reason}")
        self.step = step
        self.still_running = still_running

    def metadata(self) -> dict[str, str]:
        payload = super().metadata()
        if self.still_running:
            payload["stepStillRunning"] = "true"
        return payload


class RunTimeoutError(ResourceExhaustionError):
    def __init__(self, run_id: str, timeout_seconds: float) -> None:
        super().__init__("time", f"run {run_id} exceeded {timeout_seconds:g}s deadline")
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds


class DeploymentFailureError(ScanPipelineError):
    """The host cannot run the pipeline at all; stop serving work."""

    failure_class = FailureClass.DEPLOYMENT

    def __init__(self, failure_type: str, reason: str) -> None:
        super().__init__(f"deployment failure ({failure_type}): {reason}")
        self.failure_type = failure_type
        self.reason = reason

    def metadata(self) -> dict[str, str]:
        return {
            "deploymentFailure": "true",
            "deploymentFailureType": self.failure_type,
            "deploymentFailureReason": self.reason,
        }


class ApplicationFailureError(ScanPipelineError):
    failure_class = FailureClass.APPLICATION


class RunCancelledError(ScanPipelineError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"run {run_id} was cancelled")
        self.run_id = run_id


class StepFailure(ScanPipelineError):
    """A step failed for good: retries exhausted or the error was not retryable."""

    def __init__(
        self,
        step: str,
        attempts: int,
        cause: BaseException,
        *,
        retries_exhausted: bool,
    ) -> None:
        super().__init__(
            f"step {step} failed after {attempts} attempt(s): {type(cause).__name__}: {cause}"
        )
        self.step = step
        self.attempts = attempts
        self.cause = cause
        self.retries_exhausted = retries_exhausted


__all__ = [
    "ApplicationFailureError",
    "DeploymentFailureError",
    "InsufficientSpaceError",
    "NetworkFailureError",
    "OS_ERROR_ONLY_SIGNATURES",
    "ResourceExhaustionError",
    "RunCancelledError",
    "RunTimeoutError",
    "STORAGE_ERRNOS",
    "STORAGE_FAILURE_SIGNATURES",
    "ScanPipelineError",
    "StepFailure",
    "StepTimeoutError",
    "StorageFailureError",
    "is_storage_os_error",
    "matches_storage_signature",
]
