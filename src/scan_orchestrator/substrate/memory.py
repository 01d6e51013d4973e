"""In-process substrate with deterministic crash injection, for tests and local replay."""

from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from scan_orchestrator.domain.errors import RunCancelledError
from scan_orchestrator.domain.models import (
    ACTIVE_RUN_STATUSES,
    FailureClass,
    Run,
    RunStatus,
    canonical_json,
)
from scan_orchestrator.persistence.repositories import StepAttemptRecord
from scan_orchestrator.persistence.state_db import utc_now_iso
from scan_orchestrator.substrate.base import (
    BaseSubstrate,
    SimulatedCrashError,
    StepResult,
    lease_expired,
)


@dataclass(slots=True)
class _Control:
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    cancel_requested: bool = False


@dataclass(slots=True)
class _Attempt:
    id: int
    run_id: str
    run_attempt: int
    step: str
    attempt_number: int
    outcome: str = "running"
    error_type: str | None = None
    error_message: str | None = None
    started_at: str = field(default_factory=utc_now_iso)
    heartbeat_at: str | None = None
    finished_at: str | None = None


class InMemorySubstrate(BaseSubstrate):
    """
    Dict-backed substrate.

    ``crash_before_steps`` / ``crash_after_steps`` name steps at whose boundary a
    ``SimulatedCrashError`` is raised exactly once. A crash "after" a step fires
    once its side effects happened but before its result is recorded, so the
    next execution runs it again. Retry delays are appended to ``sleeps``
    instead of being slept.
    """

    def __init__(
        self,
        *,
        crash_before_steps: Iterable[str] = (),
        crash_after_steps: Iterable[str] = (),
        poll_interval_seconds: float = 0.01,
        logger: Any | None = None,
    ) -> None:
        super().__init__(poll_interval_seconds=poll_interval_seconds, logger=logger)
        self._pending_before = set(crash_before_steps)
        self._pending_after = set(crash_after_steps)
        self._lock = threading.RLock()
        self._runs: dict[str, Run] = {}
        self._requests: dict[str, str] = {}
        self._archive: dict[str, list[Run]] = {}
        self._control: dict[str, _Control] = {}
        self._steps: dict[tuple[str, int, str], StepResult] = {}
        self._step_order: dict[tuple[str, int], list[str]] = {}
        self._attempts: dict[int, _Attempt] = {}
        self._attempt_ids = itertools.count(1)
        self.sleeps: list[float] = []
        self.crashes: list[tuple[str, str]] = []

    def crash_before(self, *steps: str) -> None:
        with self._lock:
            self._pending_before.update(steps)

    def crash_after(self, *steps: str) -> None:
        with self._lock:
            self._pending_after.update(steps)

    def _before_step(self, run_id: str, step: str) -> None:
        with self._lock:
            if step not in self._pending_before:
                return
            self._pending_before.discard(step)
            self.crashes.append(("before", step))
        raise SimulatedCrashError(f"simulated crash before step {step} of {run_id}")

    def _after_step(self, run_id: str, step: str) -> None:
        with self._lock:
            if step not in self._pending_after:
                return
            self._pending_after.discard(step)
            self.crashes.append(("after", step))
        raise SimulatedCrashError(f"simulated crash after step {step} of {run_id}")

    def _pause(
        self,
        run: Run,
        seconds: float,
        *,
        worker_id: str | None,
        lease_seconds: float | None,
    ) -> None:
        self.sleeps.append(seconds)
        self._check_deadline(run)
        if self.is_cancel_requested(run.run_id):
            raise RunCancelledError(run.run_id)

    # ---------------------------------------------------------------- primitives

    def _load_run(self, run_id: str) -> Run | None:
        with self._lock:
            return self._runs.get(run_id)

    def _save_run(self, run: Run) -> None:
        with self._lock:
            previous = self._runs.get(run.run_id)
            if previous is None or previous.attempt != run.attempt:
                self._requests[run.run_id] = canonical_json(run.request)
            self._runs[run.run_id] = run
            self._control.setdefault(run.run_id, _Control())

    def _archive_run(self, run: Run) -> None:
        with self._lock:
            history = self._archive.setdefault(run.run_id, [])
            if all(item.attempt != run.attempt for item in history):
                history.append(run)

    def _list_archive(self, run_id: str) -> list[Run]:
        with self._lock:
            return sorted(self._archive.get(run_id, []), key=lambda item: item.attempt)

    def _load_request_json(self, run_id: str) -> str | None:
        with self._lock:
            return self._requests.get(run_id)

    def _list_runs(
        self,
        *,
        status: RunStatus | None,
        lane: str | None,
        restart_required: bool | None,
        failure_class: FailureClass | None,
        include_superseded: bool,
        limit: int,
    ) -> list[Run]:
        with self._lock:
            selected = [
                run
                for run in self._runs.values()
                if (status is None or run.status is RunStatus(status))
                and (lane is None or run.lane == lane)
                and (restart_required is None or run.restart_required == restart_required)
                and (failure_class is None or run.failure_class is FailureClass(failure_class))
                and (include_superseded or run.superseded_by is None)
            ]
        selected.sort(key=lambda run: (run.created_at, run.run_id))
        return selected[:limit]

    def _reset_control(self, run_id: str) -> None:
        with self._lock:
            self._control[run_id] = _Control()

    def _set_cancel_requested(self, run_id: str) -> bool:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status not in ACTIVE_RUN_STATUSES:
                return False
            self._control[run_id].cancel_requested = True
            return True

    def _cancel_requested(self, run_id: str) -> bool:
        with self._lock:
            control = self._control.get(run_id)
            return control is not None and control.cancel_requested

    def _claim_next(self, lane: str, worker_id: str, lease_seconds: float) -> str | None:
        with self._lock:
            now = datetime.now(UTC)
            candidates = sorted(
                (
                    run
                    for run in self._runs.values()
                    if run.lane == lane
                    and run.status in ACTIVE_RUN_STATUSES
                    and not self._control[run.run_id].cancel_requested
                    and (
                        self._control[run.run_id].claimed_by is None
                        or lease_expired(self._control[run.run_id].lease_expires_at, now)
                    )
                ),
                key=lambda run: (run.created_at, run.run_id),
            )
            if not candidates:
                return None
            chosen = candidates[0].run_id
            control = self._control[chosen]
            control.claimed_by = worker_id
            control.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return chosen

    def _claim(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        with self._lock:
            control = self._control.get(run_id)
            if control is None:
                return False
            now = datetime.now(UTC)
            if (
                control.claimed_by not in (None, worker_id)
                and not lease_expired(control.lease_expires_at, now)
            ):
                return False
            control.claimed_by = worker_id
            control.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return True

    def _renew_lease(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        with self._lock:
            control = self._control.get(run_id)
            if control is None or control.claimed_by != worker_id:
                return False
            control.lease_expires_at = datetime.now(UTC) + timedelta(seconds=lease_seconds)
            return True

    def _release_claim(self, run_id: str) -> None:
        with self._lock:
            control = self._control.get(run_id)
            if control is not None:
                control.claimed_by = None
                control.lease_expires_at = None

    def claimed_by(self, run_id: str) -> str | None:
        with self._lock:
            control = self._control.get(run_id)
            return None if control is None else control.claimed_by

    def _load_step(self, run_id: str, attempt: int, step: str) -> StepResult | None:
        with self._lock:
            stored = self._steps.get((run_id, attempt, step))
            return None if stored is None else copy.deepcopy(stored)

    def _record_step(self, run_id: str, attempt: int, step: str, result: StepResult) -> None:
        with self._lock:
            key = (run_id, attempt, step)
            if key in self._steps:
                return
            self._steps[key] = copy.deepcopy(result)
            self._step_order.setdefault((run_id, attempt), []).append(step)

    def _completed_steps(self, run_id: str, attempt: int) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._step_order.get((run_id, attempt), ()))

    def _start_attempt(
        self, run_id: str, run_attempt: int, step: str, attempt_number: int
    ) -> int:
        with self._lock:
            attempt_id = next(self._attempt_ids)
            self._attempts[attempt_id] = _Attempt(
                id=attempt_id,
                run_id=run_id,
                run_attempt=run_attempt,
                step=step,
                attempt_number=attempt_number,
            )
            return attempt_id

    def _heartbeat_attempt(self, attempt_id: int) -> None:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is not None:
                attempt.heartbeat_at = utc_now_iso()

    def _finish_attempt(
        self,
        attempt_id: int,
        *,
        succeeded: bool,
        error_type: str | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            attempt = self._attempts[attempt_id]
            attempt.outcome = "succeeded" if succeeded else "failed"
            attempt.error_type = error_type
            attempt.error_message = None if error_message is None else error_message[:4096]
            attempt.finished_at = utc_now_iso()

    def _list_attempts(self, run_id: str, run_attempt: int | None) -> list[StepAttemptRecord]:
        with self._lock:
            return [
                StepAttemptRecord(
                    id=item.id,
                    run_id=item.run_id,
                    run_attempt=item.run_attempt,
                    step=item.step,
                    attempt_number=item.attempt_number,
                    outcome=item.outcome,
                    error_type=item.error_type,
                    error_message=item.error_message,
                    started_at=item.started_at,
                    heartbeat_at=item.heartbeat_at,
                    finished_at=item.finished_at,
                )
                for item in sorted(self._attempts.values(), key=lambda entry: entry.id)
                if item.run_id == run_id
                and (run_attempt is None or item.run_attempt == run_attempt)
            ]


__all__ = ["InMemorySubstrate"]
