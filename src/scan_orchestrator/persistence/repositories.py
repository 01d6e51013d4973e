"""
scan-orchestrator — repositories over the state store

File: src/scan_orchestrator/persistence/repositories.py

Purpose
- Typed read/write access to runs, archived run attempts, memoized step results
  and the append-only step attempt history.

Functional requirements
- Run upserts never clobber claim/lease/cancel columns, which have their own
  atomic operations.
- The captured request JSON is stored once per attempt and read back verbatim.
- Step results are first-write-wins.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Final, cast

from scan_orchestrator.domain import ids
from scan_orchestrator.domain.models import (
    FailureClass,
    JSONValue,
    PipelineStep,
    Run,
    RunStatus,
)
from scan_orchestrator.persistence.state_db import (
    RowValue,
    SQLParams,
    StateDB,
    canonical_json,
    utc_now_iso,
)

if TYPE_CHECKING:
    import sqlite3

_MAX_PAGE_SIZE: Final[int] = 1_000

_RUN_COLUMNS: Final[str] = (
    "id, attempt, lane, status, current_step, success, failure_class, restart_required, "
    "workspace_path, request_json, metadata_json, restarted_from, superseded_by, "
    "deadline_at, created_at, updated_at, finished_at"
)


@dataclass(frozen=True, slots=True)
class StepAttemptRecord:
    id: int
    run_id: str
    run_attempt: int
    step: str
    attempt_number: int
    outcome: str
    error_type: str | None
    error_message: str | None
    started_at: str
    heartbeat_at: str | None
    finished_at: str | None


@dataclass(frozen=True, slots=True)
class ClaimRecord:
    run_id: str
    claimed_by: str | None
    lease_expires_at: str | None
    cancel_requested: bool


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @staticmethod
    def _validate_limit(limit: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")


class RunRepo(_BaseRepo):
    """Run records, their archive of prior attempts and per-lane claims."""

    def get(self, run_id: str, *, conn: sqlite3.Connection | None = None) -> Run | None:
        ids.validate_run_id(run_id)
        row = self._db.query_one(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = ?", (run_id,), conn=conn
        )
        return None if row is None else _row_to_run(row)

    def request_json(self, run_id: str) -> str | None:
        """Captured request exactly as stored when the attempt started."""

        ids.validate_run_id(run_id)
        row = self._db.query_one("SELECT request_json FROM runs WHERE id = ?", (run_id,))
        if row is None:
            return None
        return _row_text(row, "request_json")

    def upsert(self, run: Run, *, conn: sqlite3.Connection | None = None) -> Run:
        params: SQLParams = (
            run.run_id,
            run.attempt,
            run.lane,
            run.status.value,
            run.current_step.value,
            None if run.success is None else int(run.success),
            None if run.failure_class is None else run.failure_class.value,
            int(run.restart_required),
            run.workspace_path,
            canonical_json(run.request),
            canonical_json(run.metadata),
            run.restarted_from,
            run.superseded_by,
            None if run.deadline_at is None else utc_now_iso(run.deadline_at),
            utc_now_iso(run.created_at),
            utc_now_iso(run.updated_at),
            None if run.finished_at is None else utc_now_iso(run.finished_at),
        )
        self._db.execute(
            f"""
            INSERT INTO runs ({_RUN_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                attempt=excluded.attempt,
                lane=excluded.lane,
                status=excluded.status,
                current_step=excluded.current_step,
                success=excluded.success,
                failure_class=excluded.failure_class,
                restart_required=excluded.restart_required,
                workspace_path=excluded.workspace_path,
                request_json=excluded.request_json,
                metadata_json=excluded.metadata_json,
                restarted_from=excluded.restarted_from,
                superseded_by=excluded.superseded_by,
                deadline_at=excluded.deadline_at,
                created_at=excluded.created_at,
                updated_at=excluded.updated_at,
                finished_at=excluded.finished_at
            """,
            params,
            conn=conn,
        )
        return run

    def reset_control(self, run_id: str, *, conn: sqlite3.Connection | None = None) -> None:
        """Clear cancel flag and claim; used when a new attempt starts."""

        self._db.execute(
            """
            UPDATE runs
            SET cancel_requested = 0, claimed_by = NULL, lease_expires_at = NULL
            WHERE id = ?
            """,
            (run_id,),
            conn=conn,
        )

    def archive(self, run: Run, *, conn: sqlite3.Connection | None = None) -> None:
        self._db.execute(
            """
            INSERT INTO run_archive (run_id, attempt, archived_at, payload_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(run_id, attempt) DO NOTHING
            """,
            (run.run_id, run.attempt, utc_now_iso(), run.to_json()),
            conn=conn,
        )

    def list_archive(self, run_id: str) -> list[Run]:
        ids.validate_run_id(run_id)
        rows = self._db.query_all(
            "SELECT payload_json FROM run_archive WHERE run_id = ? ORDER BY attempt",
            (run_id,),
        )
        return [Run.from_json(_row_text(row, "payload_json")) for row in rows]

    def list(
        self,
        *,
        status: RunStatus | None = None,
        lane: str | None = None,
        restart_required: bool | None = None,
        failure_class: FailureClass | None = None,
        include_superseded: bool = True,
        limit: int = 100,
    ) -> list[Run]:
        self._validate_limit(limit)
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(RunStatus(status).value)
        if lane is not None:
            clauses.append("lane = ?")
            params.append(lane)
        if restart_required is not None:
            clauses.append("restart_required = ?")
            params.append(int(restart_required))
        if failure_class is not None:
            clauses.append("failure_class = ?")
            params.append(FailureClass(failure_class).value)
        if not include_superseded:
            clauses.append("superseded_by IS NULL")

        sql = f"SELECT {_RUN_COLUMNS} FROM runs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(limit)
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [_row_to_run(row) for row in rows]

    def control(self, run_id: str, *, conn: sqlite3.Connection | None = None) -> ClaimRecord | None:
        row = self._db.query_one(
            "SELECT id, claimed_by, lease_expires_at, cancel_requested FROM runs WHERE id = ?",
            (run_id,),
            conn=conn,
        )
        if row is None:
            return None
        claimed_by = row["claimed_by"]
        lease = row["lease_expires_at"]
        return ClaimRecord(
            run_id=run_id,
            claimed_by=claimed_by if isinstance(claimed_by, str) else None,
            lease_expires_at=lease if isinstance(lease, str) else None,
            cancel_requested=bool(row["cancel_requested"]),
        )

    def set_cancel_requested(self, run_id: str) -> bool:
        changed = self._db.execute(
            """
            UPDATE runs SET cancel_requested = 1, updated_at = ?
            WHERE id = ? AND status IN ('pending', 'running')
            """,
            (utc_now_iso(), run_id),
        )
        return changed > 0

    def claim_next(self, lane: str, worker_id: str, lease_seconds: float) -> str | None:
        """Claim the oldest pending (or abandoned running) run in ``lane``."""

        now = datetime.now(UTC)
        with self._db.transaction(immediate=True) as conn:
            row = self._db.query_one(
                """
                SELECT id FROM runs
                WHERE lane = ?
                  AND status IN ('pending', 'running')
                  AND cancel_requested = 0
                  AND (claimed_by IS NULL OR lease_expires_at IS NULL OR lease_expires_at < ?)
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                (lane, utc_now_iso(now)),
                conn=conn,
            )
            if row is None:
                return None
            run_id = _row_text(row, "id")
            self._db.execute(
                "UPDATE runs SET claimed_by = ?, lease_expires_at = ? WHERE id = ?",
                (worker_id, utc_now_iso(now + timedelta(seconds=lease_seconds)), run_id),
                conn=conn,
            )
            return run_id

    def claim(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        """Claim a specific run unless another worker holds a live lease on it."""

        now = datetime.now(UTC)
        changed = self._db.execute(
            """
            UPDATE runs SET claimed_by = ?, lease_expires_at = ?
            WHERE id = ?
              AND (claimed_by IS NULL OR claimed_by = ?
                   OR lease_expires_at IS NULL OR lease_expires_at < ?)
            """,
            (
                worker_id,
                utc_now_iso(now + timedelta(seconds=lease_seconds)),
                run_id,
                worker_id,
                utc_now_iso(now),
            ),
        )
        return changed > 0

    def renew_lease(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        expires = datetime.now(UTC) + timedelta(seconds=lease_seconds)
        changed = self._db.execute(
            "UPDATE runs SET lease_expires_at = ? WHERE id = ? AND claimed_by = ?",
            (utc_now_iso(expires), run_id, worker_id),
        )
        return changed > 0

    def release(self, run_id: str, *, conn: sqlite3.Connection | None = None) -> None:
        self._db.execute(
            "UPDATE runs SET claimed_by = NULL, lease_expires_at = NULL WHERE id = ?",
            (run_id,),
            conn=conn,
        )


class StepRepo(_BaseRepo):
    """Memoized step outcomes keyed by (run_id, attempt, step)."""

    def get(self, run_id: str, attempt: int, step: str) -> dict[str, JSONValue] | None:
        row = self._db.query_one(
            "SELECT result_json FROM step_results WHERE run_id = ? AND attempt = ? AND step = ?",
            (run_id, attempt, step),
        )
        if row is None:
            return None
        return _load_json_object(_row_text(row, "result_json"), "step_results.result_json")

    def record(self, run_id: str, attempt: int, step: str, result: Mapping[str, object]) -> bool:
        changed = self._db.execute(
            """
            INSERT INTO step_results (run_id, attempt, step, result_json, completed_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(run_id, attempt, step) DO NOTHING
            """,
            (run_id, attempt, step, canonical_json(dict(result)), utc_now_iso()),
        )
        return changed > 0

    def completed_steps(self, run_id: str, attempt: int) -> tuple[str, ...]:
        rows = self._db.query_all(
            """
            SELECT step FROM step_results
            WHERE run_id = ? AND attempt = ?
            ORDER BY completed_at ASC
            """,
            (run_id, attempt),
        )
        return tuple(_row_text(row, "step") for row in rows)


class StepAttemptRepo(_BaseRepo):
    """Append-only record of every step attempt, including heartbeats."""

    def start(self, run_id: str, run_attempt: int, step: str, attempt_number: int) -> int:
        return self._db.insert(
            """
            INSERT INTO step_attempts (
                run_id, run_attempt, step, attempt_number, outcome, started_at
            ) VALUES (?, ?, ?, ?, 'running', ?)
            """,
            (run_id, run_attempt, step, attempt_number, utc_now_iso()),
        )

    def heartbeat(self, attempt_id: int) -> None:
        self._db.execute(
            "UPDATE step_attempts SET heartbeat_at = ? WHERE id = ?",
            (utc_now_iso(), attempt_id),
        )

    def finish(
        self,
        attempt_id: int,
        *,
        succeeded: bool,
        error_type: str | None = None,
        error_message: str | None = None,
    ) -> None:
        self._db.execute(
            """
            UPDATE step_attempts
            SET outcome = ?, error_type = ?, error_message = ?, finished_at = ?
            WHERE id = ?
            """,
            (
                "succeeded" if succeeded else "failed",
                error_type,
                None if error_message is None else error_message[:4096],
                utc_now_iso(),
                attempt_id,
            ),
        )

    def list_for_run(
        self, run_id: str, *, run_attempt: int | None = None
    ) -> list[StepAttemptRecord]:
        sql = "SELECT * FROM step_attempts WHERE run_id = ?"
        params: list[object] = [run_id]
        if run_attempt is not None:
            sql += " AND run_attempt = ?"
            params.append(run_attempt)
        sql += " ORDER BY id ASC"
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [_row_to_attempt(row) for row in rows]


def _row_to_run(row: Mapping[str, RowValue]) -> Run:
    success = row["success"]
    failure_class = row["failure_class"]
    return Run(
        run_id=_row_text(row, "id"),
        attempt=_row_int(row, "attempt"),
        lane=_row_text(row, "lane"),
        status=RunStatus(_row_text(row, "status")),
        current_step=PipelineStep(_row_text(row, "current_step")),
        success=None if success is None else bool(success),
        failure_class=None if failure_class is None else FailureClass(str(failure_class)),
        restart_required=bool(row["restart_required"]),
        workspace_path=_row_text(row, "workspace_path"),
        request=_load_json_object(_row_text(row, "request_json"), "runs.request_json"),
        metadata=cast(
            "dict[str, str]",
            _load_json_object(_row_text(row, "metadata_json"), "runs.metadata_json"),
        ),
        restarted_from=_row_optional_text(row, "restarted_from"),
        superseded_by=_row_optional_text(row, "superseded_by"),
        deadline_at=_row_optional_datetime(row, "deadline_at"),
        created_at=_parse_iso(_row_text(row, "created_at")),
        updated_at=_parse_iso(_row_text(row, "updated_at")),
        finished_at=_row_optional_datetime(row, "finished_at"),
    )


def _row_to_attempt(row: Mapping[str, RowValue]) -> StepAttemptRecord:
    return StepAttemptRecord(
        id=_row_int(row, "id"),
        run_id=_row_text(row, "run_id"),
        run_attempt=_row_int(row, "run_attempt"),
        step=_row_text(row, "step"),
        attempt_number=_row_int(row, "attempt_number"),
        outcome=_row_text(row, "outcome"),
        error_type=_row_optional_text(row, "error_type"),
        error_message=_row_optional_text(row, "error_message"),
        started_at=_row_text(row, "started_at"),
        heartbeat_at=_row_optional_text(row, "heartbeat_at"),
        finished_at=_row_optional_text(row, "finished_at"),
    )


def _row_text(row: Mapping[str, RowValue], key: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected text column, got {type(value).__name__}")
    return value


def _row_optional_text(row: Mapping[str, RowValue], key: str) -> str | None:
    value = row.get(key)
    return value if isinstance(value, str) else None


def _row_int(row: Mapping[str, RowValue], key: str) -> int:
    value = row.get(key)
    if not isinstance(value, int):
        raise ValueError(f"{key}: expected integer column, got {type(value).__name__}")
    return value


def _row_optional_datetime(row: Mapping[str, RowValue], key: str) -> datetime | None:
    value = _row_optional_text(row, key)
    return None if value is None else _parse_iso(value)


def _parse_iso(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    return datetime.fromisoformat(text).astimezone(UTC)


def _load_json_object(payload: str, path: str) -> dict[str, JSONValue]:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON payload: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected JSON object")
    return cast("dict[str, JSONValue]", parsed)


__all__ = [
    "ClaimRecord",
    "RunRepo",
    "StepAttemptRecord",
    "StepAttemptRepo",
    "StepRepo",
]
