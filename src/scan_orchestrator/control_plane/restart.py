"""
scan-orchestrator — restart coordinator.

File: src/scan_orchestrator/control_plane/restart.py

Purpose
- Periodically find failed, restart-eligible Runs and resubmit their captured
  input once the precondition that failed them is restored.

Functional requirements
- Candidates are ``failed`` Runs with ``restart_required`` that nothing has
  superseded yet, filtered by their durably stored ``failure_class``. Each
  class is listed on its own and ``batch_limit`` caps resubmissions per pass.
- Storage health is probed at most once per batch and only when a storage Run
  is seen; an unhealthy probe skips storage Runs without using up the batch.
- The resubmitted request is the captured original, unchanged. In new-id mode
  the original Run is marked ``superseded_by`` the new one; in reuse mode the
  same identity starts a new attempt.
- The coordinator only resubmits; execution belongs to workers unless
  ``execute=True``.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Final, cast

import structlog

from scan_orchestrator.control_plane.controller import PipelineController
from scan_orchestrator.control_plane.policies import effective_config
from scan_orchestrator.domain.ids import restart_run_id
from scan_orchestrator.domain.models import FailureClass, JSONValue, Run, RunStatus
from scan_orchestrator.integration_plane.storage_health import (
    StorageHealth,
    StorageHealthChecker,
    StorageProbe,
)
from scan_orchestrator.substrate.base import BaseSubstrate

ALL_FAILURE_TYPES: Final[str] = "all"


class RestartStatus(StrEnum):
    RESTARTED = "restarted"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class RestartSettings:
    interval_seconds: float = 1800.0
    failure_type: str = FailureClass.STORAGE.value
    verify_storage: bool = True
    use_new_run_id: bool = True
    batch_limit: int = 100

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self.failure_type != ALL_FAILURE_TYPES:
            FailureClass(self.failure_type)
        if not 1 <= self.batch_limit <= 1000:
            raise ValueError("batch_limit must be in [1, 1000]")

    @classmethod
    def from_config(cls, config: Mapping[str, object] | None = None) -> RestartSettings:
        section = effective_config(config).get("restart")
        restart = cast("Mapping[str, Any]", section if isinstance(section, Mapping) else {})
        return cls(
            interval_seconds=float(restart.get("interval_seconds", 1800.0)),
            failure_type=str(restart.get("failure_type", FailureClass.STORAGE.value)),
            verify_storage=bool(restart.get("verify_storage", True)),
            use_new_run_id=bool(restart.get("use_new_run_id", True)),
            batch_limit=int(restart.get("batch_limit", 100)),
        )

    @property
    def selected_class(self) -> FailureClass | None:
        """The single class to restart, or ``None`` when every restartable class is wanted."""

        if self.failure_type == ALL_FAILURE_TYPES:
            return None
        return FailureClass(self.failure_type)


@dataclass(frozen=True, slots=True)
class RestartOutcome:
    run_id: str
    failure_class: FailureClass | None
    status: RestartStatus
    reason: str
    new_run_id: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "failure_class": None if self.failure_class is None else self.failure_class.value,
            "status": self.status.value,
            "reason": self.reason,
            "new_run_id": self.new_run_id,
        }


@dataclass(frozen=True, slots=True)
class RestartReport:
    outcomes: tuple[RestartOutcome, ...] = ()
    storage_health: StorageHealth | None = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def restarted(self) -> tuple[RestartOutcome, ...]:
        return tuple(item for item in self.outcomes if item.status is RestartStatus.RESTARTED)

    @property
    def skipped(self) -> tuple[RestartOutcome, ...]:
        return tuple(item for item in self.outcomes if item.status is RestartStatus.SKIPPED)

    def to_dict(self) -> dict[str, JSONValue]:
        health: JSONValue = None
        if self.storage_health is not None:
            health = {
                "path": self.storage_health.path,
                "healthy": self.storage_health.healthy,
                "reason": self.storage_health.reason,
            }
        return {
            "checked_at": self.checked_at.isoformat(),
            "restarted": len(self.restarted),
            "skipped": len(self.skipped),
            "storage_health": health,
            "outcomes": [item.to_dict() for item in self.outcomes],
        }


class RestartCoordinator:
    """Resubmit restart-eligible failed Runs through the pipeline controller."""

    def __init__(
        self,
        controller: PipelineController,
        substrate: BaseSubstrate | None = None,
        *,
        settings: RestartSettings | None = None,
        workspace_root: str | Path | None = None,
        storage_probe: StorageHealthChecker | None = None,
        execute: bool = False,
        clock_ms: Callable[[], int] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._controller = controller
        self._substrate = substrate if substrate is not None else controller.substrate
        self._settings = settings if settings is not None else RestartSettings()
        self._workspace_root = Path(
            workspace_root if workspace_root is not None else controller.workspace_manager.root
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._probe: StorageHealthChecker = (
            storage_probe if storage_probe is not None else StorageProbe(logger=self._logger)
        )
        self._execute = execute
        self._clock_ms: Callable[[], int] = (
            clock_ms if clock_ms is not None else lambda: int(time.time() * 1000)
        )

    @property
    def settings(self) -> RestartSettings:
        return self._settings

    def run_once(self) -> RestartReport:
        health: StorageHealth | None = None
        outcomes: list[RestartOutcome] = []
        seen = 0
        remaining = self._settings.batch_limit
        for failure_class in self._candidate_classes():
            if remaining <= 0:
                break
            runs = self._substrate.list_runs(
                status=RunStatus.FAILED,
                restart_required=True,
                failure_class=failure_class,
                include_superseded=False,
                limit=remaining,
            )
            if not runs:
                continue
            seen += len(runs)
            if failure_class is FailureClass.STORAGE and self._settings.verify_storage:
                health = self._probe.check(self._workspace_root)
                self._logger.info(
                    "restart_storage_checked",
                    path=health.path,
                    healthy=health.healthy,
                    reason=health.reason,
                )
                if not health.healthy:
                    # Skipped storage Runs leave the batch open for the other classes.
                    reason = f"storage still unhealthy: {health.reason}"
                    outcomes.extend(self._skip(run, reason) for run in runs)
                    continue
            for run in runs:
                outcomes.append(self._restart(run))
                remaining -= 1

        report = RestartReport(outcomes=tuple(outcomes), storage_health=health)
        self._logger.info(
            "restart_pass_finished",
            candidates=seen,
            restarted=len(report.restarted),
            skipped=len(report.skipped),
        )
        return report

    def run_forever(
        self,
        stop_event: threading.Event | None = None,
        *,
        max_cycles: int | None = None,
    ) -> list[RestartReport]:
        """Run passes every ``interval_seconds`` until ``stop_event`` is set."""

        stop = stop_event if stop_event is not None else threading.Event()
        reports: list[RestartReport] = []
        while not stop.is_set():
            reports.append(self.run_once())
            if max_cycles is not None and len(reports) >= max_cycles:
                break
            stop.wait(self._settings.interval_seconds)
        return reports

    def _candidate_classes(self) -> tuple[FailureClass, ...]:
        selected = self._settings.selected_class
        if selected is not None:
            return (selected,)
        restartable = self._controller.settings.is_restartable
        return tuple(item for item in FailureClass if restartable(item))

    def _restart(self, run: Run) -> RestartOutcome:
        try:
            request = self._substrate.query_run_input(run.run_id)
        except ValueError as exc:
            return self._skip(run, f"captured input is unreadable: {exc}")
        if request is None:
            return self._skip(run, "no captured input")

        try:
            if self._settings.use_new_run_id:
                new_run_id = restart_run_id(run.run_id, timestamp_ms=self._clock_ms())
                submitted = self._controller.submit(
                    request,
                    run_id=new_run_id,
                    reuse_terminal=False,
                    restarted_from=run.run_id,
                )
            else:
                submitted = self._controller.submit(
                    request,
                    run_id=run.run_id,
                    reuse_terminal=True,
                    restarted_from=run.run_id,
                )
        except ValueError as exc:
            return self._skip(run, f"resubmission rejected: {exc}")

        if not submitted.created:
            return self._skip(run, f"run {submitted.run_id} is already active")
        if self._settings.use_new_run_id:
            self._substrate.mark_superseded(run.run_id, submitted.run_id)

        self._logger.info(
            "run_restarted",
            run_id=run.run_id,
            new_run_id=submitted.run_id,
            failure_class=None if run.failure_class is None else run.failure_class.value,
            lane=submitted.lane,
            attempt=submitted.run.attempt,
        )
        if self._execute:
            self._controller.execute(submitted.run_id)
        return RestartOutcome(
            run_id=run.run_id,
            failure_class=run.failure_class,
            status=RestartStatus.RESTARTED,
            reason=f"resubmitted to {submitted.queue}",
            new_run_id=submitted.run_id,
        )

    def _skip(self, run: Run, reason: str) -> RestartOutcome:
        self._logger.info(
            "restart_skipped",
            run_id=run.run_id,
            failure_class=None if run.failure_class is None else run.failure_class.value,
            reason=reason,
        )
        return RestartOutcome(
            run_id=run.run_id,
            failure_class=run.failure_class,
            status=RestartStatus.SKIPPED,
            reason=reason,
        )


__all__ = [
    "ALL_FAILURE_TYPES",
    "RestartCoordinator",
    "RestartOutcome",
    "RestartReport",
    "RestartSettings",
    "RestartStatus",
]
