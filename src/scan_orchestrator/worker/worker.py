"""
scan-orchestrator — lane worker.

File: src/scan_orchestrator/worker/worker.py

Purpose
- Pull Runs from lane queues and execute them through the pipeline controller,
  with one bounded executor per lane so a busy lane cannot starve the others.

Functional requirements
- The deployment preflight runs before the first claim; a failing preflight
  stops the worker without touching any Run.
- Each lane keeps at most its configured number of Runs in flight.
- A ``DeploymentFailureError`` from any Run stops further claims; in-flight Runs
  finish and the error propagates out of ``run``.
- Any other error escaping a Run is logged and the Run is left for redelivery
  once its lease expires.
"""

from __future__ import annotations

import os
import socket
import threading
import uuid
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, cast

import structlog

from scan_orchestrator.control_plane.controller import PipelineController, RunReport
from scan_orchestrator.control_plane.policies import effective_config
from scan_orchestrator.domain import ids
from scan_orchestrator.domain.errors import DeploymentFailureError
from scan_orchestrator.worker.deployment import DeploymentHealthCheck


@dataclass(slots=True)
class WorkerStats:
    dispatched: int = 0
    completed: int = 0
    errored: int = 0


class Worker:
    """Claim and execute Runs for a set of lanes."""

    def __init__(
        self,
        controller: PipelineController,
        *,
        lanes: Sequence[str],
        concurrency: Mapping[str, int] | None = None,
        worker_id: str | None = None,
        poll_interval_seconds: float = 5.0,
        lease_seconds: float | None = None,
        health_check: DeploymentHealthCheck | None = None,
        logger: Any | None = None,
    ) -> None:
        if not lanes:
            raise ValueError("a worker needs at least one lane")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._controller = controller
        self._substrate = controller.substrate
        self._lanes = tuple(ids.validate_lane_name(lane) for lane in lanes)
        ceilings = dict(concurrency or {})
        self._concurrency = {
            lane: max(1, int(ceilings.get(lane, controller.lane_router.concurrency_for(lane))))
            for lane in self._lanes
        }
        self._worker_id = worker_id if worker_id is not None else _default_worker_id()
        self._poll_interval = poll_interval_seconds
        self._lease_seconds = (
            lease_seconds if lease_seconds is not None else controller.settings.lease_seconds
        )
        self._health_check = health_check
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._executors: dict[str, ThreadPoolExecutor] = {}
        self._in_flight: dict[str, dict[str, Future[RunReport]]] = {
            lane: {} for lane in self._lanes
        }
        self._fatal: DeploymentFailureError | None = None
        self.stats = WorkerStats()

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object] | None,
        controller: PipelineController,
        *,
        lanes: Sequence[str] | None = None,
        worker_id: str | None = None,
        health_check: DeploymentHealthCheck | None = None,
        logger: Any | None = None,
    ) -> Worker:
        section = effective_config(config).get("worker")
        worker = cast("Mapping[str, Any]", section if isinstance(section, Mapping) else {})
        configured_lanes = [str(lane) for lane in worker.get("lanes", [])]
        return cls(
            controller,
            lanes=tuple(lanes) if lanes else tuple(configured_lanes),
            worker_id=worker_id,
            poll_interval_seconds=float(worker.get("poll_interval_seconds", 5.0)),
            lease_seconds=float(worker.get("lease_seconds", controller.settings.lease_seconds)),
            health_check=health_check,
            logger=logger,
        )

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def lanes(self) -> tuple[str, ...]:
        return self._lanes

    def concurrency_for(self, lane: str) -> int:
        return self._concurrency[lane]

    def in_flight(self) -> int:
        with self._lock:
            return sum(len(running) for running in self._in_flight.values())

    def preflight(self) -> None:
        if self._health_check is not None:
            self._health_check.require()

    def run(self, stop_event: threading.Event | None = None, *, drain: bool = False) -> WorkerStats:
        """
        Serve the lanes until ``stop_event`` is set.

        With ``drain=True`` the loop also ends once no Run could be claimed and
        nothing is in flight.
        """

        stop = stop_event if stop_event is not None else threading.Event()
        self.preflight()
        self._logger.info(
            "worker_started",
            worker_id=self._worker_id,
            lanes=list(self._lanes),
            concurrency=dict(self._concurrency),
        )
        try:
            while not stop.is_set():
                dispatched = self.run_once()
                if self._fatal is not None:
                    break
                if drain and dispatched == 0 and self.in_flight() == 0:
                    break
                if dispatched == 0:
                    stop.wait(self._poll_interval)
        finally:
            self.close()
        self._logger.info(
            "worker_stopped",
            worker_id=self._worker_id,
            dispatched=self.stats.dispatched,
            completed=self.stats.completed,
            errored=self.stats.errored,
        )
        if self._fatal is not None:
            raise self._fatal
        return self.stats

    def run_once(self) -> int:
        """Claim Runs into every lane with a free slot; return how many were dispatched."""

        dispatched = 0
        for lane in self._lanes:
            while self._fatal is None and self._free_slots(lane) > 0:
                run_id = self._substrate.claim_next(lane, self._worker_id, self._lease_seconds)
                if run_id is None:
                    break
                self._dispatch(lane, run_id)
                dispatched += 1
        return dispatched

    def close(self) -> None:
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=True)

    def _free_slots(self, lane: str) -> int:
        with self._lock:
            return self._concurrency[lane] - len(self._in_flight[lane])

    def _dispatch(self, lane: str, run_id: str) -> None:
        with self._lock:
            executor = self._executors.get(lane)
            if executor is None:
                executor = ThreadPoolExecutor(
                    max_workers=self._concurrency[lane],
                    thread_name_prefix=f"scanorch-{lane}",
                )
                self._executors[lane] = executor
            future = executor.submit(self._controller.execute, run_id, worker_id=self._worker_id)
            self._in_flight[lane][run_id] = future
            self.stats.dispatched += 1
        self._logger.info("run_dispatched", run_id=run_id, lane=lane, worker_id=self._worker_id)
        future.add_done_callback(lambda done: self._on_done(lane, run_id, done))

    def _on_done(self, lane: str, run_id: str, future: Future[RunReport]) -> None:
        exc = future.exception()
        with self._lock:
            # The slot must not free up before the fatal error is visible to run_once.
            if isinstance(exc, DeploymentFailureError) and self._fatal is None:
                self._fatal = exc
            self._in_flight[lane].pop(run_id, None)
        if exc is None:
            with self._lock:
                self.stats.completed += 1
            report = future.result()
            self._logger.info(
                "run_execution_finished",
                run_id=run_id,
                lane=lane,
                status=report.status.value,
                executed=report.executed,
            )
            return
        with self._lock:
            self.stats.errored += 1
        if isinstance(exc, DeploymentFailureError):
            self._logger.error(
                "worker_deployment_failure",
                run_id=run_id,
                lane=lane,
                failure_type=exc.failure_type,
                reason=exc.reason,
            )
            return
        self._logger.error(
            "run_execution_crashed",
            run_id=run_id,
            lane=lane,
            error_type=type(exc).__name__,
            error=str(exc),
        )


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


__all__ = ["Worker", "WorkerStats"]
