"""SQLite-backed substrate: durable runs and workers sharing one state database."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from scan_orchestrator.domain.models import FailureClass, Run, RunStatus
from scan_orchestrator.persistence.repositories import (
    RunRepo,
    StepAttemptRecord,
    StepAttemptRepo,
    StepRepo,
)
from scan_orchestrator.persistence.state_db import StateDB
from scan_orchestrator.substrate.base import BaseSubstrate, StepResult


class SQLiteSubstrate(BaseSubstrate):
    """Substrate whose runs, step results and claims live in a ``StateDB``."""

    def __init__(
        self,
        state_db: StateDB | str | Path,
        *,
        poll_interval_seconds: float = 0.1,
        logger: Any | None = None,
    ) -> None:
        super().__init__(poll_interval_seconds=poll_interval_seconds, logger=logger)
        self._db = state_db if isinstance(state_db, StateDB) else StateDB(state_db)
        self._runs = RunRepo(self._db)
        self._steps = StepRepo(self._db)
        self._attempts = StepAttemptRepo(self._db)

    @property
    def state_db(self) -> StateDB:
        return self._db

    def claim_state(self, run_id: str) -> tuple[str | None, str | None]:
        """``(claimed_by, lease_expires_at)`` for diagnostics."""

        control = self._runs.control(run_id)
        if control is None:
            return (None, None)
        return (control.claimed_by, control.lease_expires_at)

    def _load_run(self, run_id: str) -> Run | None:
        return self._runs.get(run_id)

    def _save_run(self, run: Run) -> None:
        self._runs.upsert(run)

    def _archive_run(self, run: Run) -> None:
        self._runs.archive(run)

    def _list_archive(self, run_id: str) -> list[Run]:
        return self._runs.list_archive(run_id)

    def _load_request_json(self, run_id: str) -> str | None:
        return self._runs.request_json(run_id)

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
        return self._runs.list(
            status=status,
            lane=lane,
            restart_required=restart_required,
            failure_class=failure_class,
            include_superseded=include_superseded,
            limit=limit,
        )

    def _reset_control(self, run_id: str) -> None:
        self._runs.reset_control(run_id)

    def _set_cancel_requested(self, run_id: str) -> bool:
        return self._runs.set_cancel_requested(run_id)

    def _cancel_requested(self, run_id: str) -> bool:
        control = self._runs.control(run_id)
        return control is not None and control.cancel_requested

    def _claim_next(self, lane: str, worker_id: str, lease_seconds: float) -> str | None:
        return self._runs.claim_next(lane, worker_id, lease_seconds)

    def _claim(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        return self._runs.claim(run_id, worker_id, lease_seconds)

    def _renew_lease(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        return self._runs.renew_lease(run_id, worker_id, lease_seconds)

    def _release_claim(self, run_id: str) -> None:
        self._runs.release(run_id)

    def _load_step(self, run_id: str, attempt: int, step: str) -> StepResult | None:
        return self._steps.get(run_id, attempt, step)

    def _record_step(self, run_id: str, attempt: int, step: str, result: StepResult) -> None:
        self._steps.record(run_id, attempt, step, result)

    def _completed_steps(self, run_id: str, attempt: int) -> tuple[str, ...]:
        return self._steps.completed_steps(run_id, attempt)

    def _start_attempt(
        self, run_id: str, run_attempt: int, step: str, attempt_number: int
    ) -> int:
        return self._attempts.start(run_id, run_attempt, step, attempt_number)

    def _heartbeat_attempt(self, attempt_id: int) -> None:
        self._attempts.heartbeat(attempt_id)

    def _finish_attempt(
        self,
        attempt_id: int,
        *,
        succeeded: bool,
        error_type: str | None = None,
        error_message: str | None = None,
    ) -> None:
        self._attempts.finish(
            attempt_id,
            succeeded=succeeded,
            error_type=error_type,
            error_message=error_message,
        )

    def _list_attempts(self, run_id: str, run_attempt: int | None) -> list[StepAttemptRecord]:
        return self._attempts.list_for_run(run_id, run_attempt=run_attempt)


__all__ = ["SQLiteSubstrate"]
