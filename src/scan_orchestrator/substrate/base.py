"""
scan-orchestrator — durable execution substrate contract.

File: src/scan_orchestrator/substrate/base.py

Purpose
- The interface the pipeline controller runs against, plus the shared step
  dispatch loop every backend inherits.

Functional requirements
- ``start_run`` is idempotent for active runs; a terminal run is archived and
  restarted as attempt ``n+1`` when ``reuse_terminal`` is set.
- Step results are memoized per ``(run_id, attempt, step)``; a completed step is
  never re-run by a replay.
- Attempts follow the step's ``RetryPolicy`` and retryable predicate; every
  attempt is recorded with its error type and message.
- Supervised steps run on a daemon thread. A missed heartbeat or elapsed
  start-to-close timeout abandons the attempt and raises ``StepTimeoutError``
  once it exits, or after the grace period. An attempt still running after the
  grace period is never retried, so two attempts of one step never overlap.
- The run deadline raises ``RunTimeoutError``; a cancellation request sets the
  step's cancel flag, waits the grace period and then gives up on the step.
- The supervising loop renews the worker lease, so steps that never heartbeat
  keep their claim.
- Runs are immutable once terminal, except for ``superseded_by``.
"""

from __future__ import annotations

import abc
import dataclasses
import json
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Final, Protocol, cast

import structlog

from scan_orchestrator.control_plane.policies import StepOptions
from scan_orchestrator.domain.errors import (
    DeploymentFailureError,
    RunCancelledError,
    RunTimeoutError,
    StepFailure,
    StepTimeoutError,
)
from scan_orchestrator.domain.models import (
    FailureClass,
    JSONValue,
    PipelineStep,
    Run,
    RunStatus,
    ScanRequest,
    canonical_json,
)
from scan_orchestrator.persistence.repositories import StepAttemptRecord

StepResult = dict[str, JSONValue]
StepFn = Callable[["StepContext"], Mapping[str, JSONValue]]

_HEARTBEAT_RECORD_INTERVAL_SECONDS: Final[float] = 1.0
_CONTROL_CHECK_INTERVAL_SECONDS: Final[float] = 0.5
_PAUSE_CHUNK_SECONDS: Final[float] = 1.0


class SimulatedCrashError(RuntimeError):
    """Injected process death at a step boundary; never caught by the pipeline."""


@dataclass(frozen=True, slots=True)
class RunStart:
    run: Run
    created: bool


class StepContext:
    """Handle passed to a running step for heartbeats and cancellation."""

    def __init__(
        self,
        substrate: BaseSubstrate,
        *,
        run_id: str,
        run_attempt: int,
        step: str,
        attempt_number: int,
        attempt_id: int,
        worker_id: str | None = None,
        lease_seconds: float | None = None,
    ) -> None:
        self.run_id = run_id
        self.run_attempt = run_attempt
        self.step = step
        self.attempt_number = attempt_number
        self.cancel_event = threading.Event()
        self._substrate = substrate
        self._attempt_id = attempt_id
        self._worker_id = worker_id
        self._lease_seconds = lease_seconds
        self._abandoned = threading.Event()
        self._last_heartbeat = time.monotonic()
        self._last_recorded = float("-inf")

    @property
    def last_heartbeat(self) -> float:
        return self._last_heartbeat

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    @property
    def lease_seconds(self) -> float | None:
        return self._lease_seconds if self._worker_id is not None else None

    def abandon(self) -> None:
        self._abandoned.set()
        self.cancel_event.set()

    def renew_lease(self) -> bool:
        if self._worker_id is None or self._lease_seconds is None:
            return False
        return self._substrate.renew_lease(self.run_id, self._worker_id, self._lease_seconds)

    def heartbeat(self) -> None:
        """Record liveness; raise once the run is cancelled or this attempt was given up."""

        if self._abandoned.is_set():
            raise StepTimeoutError(self.step, "was abandoned by its supervisor")
        now = time.monotonic()
        self._last_heartbeat = now
        if now - self._last_recorded >= _HEARTBEAT_RECORD_INTERVAL_SECONDS:
            self._last_recorded = now
            self._substrate.record_heartbeat(self._attempt_id)
            self.renew_lease()
            if self._substrate.is_cancel_requested(self.run_id):
                self.cancel_event.set()
        if self.cancel_event.is_set():
            raise RunCancelledError(self.run_id)


class ExecutionSubstrate(Protocol):
    """What the controller, the worker and the restart coordinator rely on."""

    def start_run(
        self,
        run_id: str,
        lane: str,
        request: ScanRequest,
        workspace_path: str | Path,
        run_timeout_seconds: float,
        *,
        restarted_from: str | None = None,
        reuse_terminal: bool = True,
    ) -> RunStart: ...

    def execute_step(
        self,
        run_id: str,
        step: str,
        fn: StepFn,
        options: StepOptions,
        *,
        worker_id: str | None = None,
        lease_seconds: float | None = None,
    ) -> StepResult: ...

    def get_run(self, run_id: str) -> Run | None: ...

    def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        lane: str | None = None,
        restart_required: bool | None = None,
        failure_class: FailureClass | None = None,
        include_superseded: bool = True,
        limit: int = 100,
    ) -> list[Run]: ...

    def query_run_input(self, run_id: str) -> ScanRequest | None: ...

    def mark_running(self, run_id: str) -> Run: ...

    def set_current_step(self, run_id: str, step: PipelineStep) -> Run: ...

    def annotate(self, run_id: str, metadata: Mapping[str, str]) -> Run: ...

    def complete_run(
        self,
        run_id: str,
        *,
        status: RunStatus,
        success: bool | None = None,
        failure_class: FailureClass | None = None,
        restart_required: bool = False,
        metadata: Mapping[str, str] | None = None,
    ) -> Run: ...

    def mark_superseded(self, run_id: str, superseded_by: str) -> Run: ...

    def request_cancel(self, run_id: str) -> bool: ...

    def is_cancel_requested(self, run_id: str) -> bool: ...

    def claim_next(self, lane: str, worker_id: str, lease_seconds: float) -> str | None: ...

    def claim(self, run_id: str, worker_id: str, lease_seconds: float) -> bool: ...

    def renew_lease(self, run_id: str, worker_id: str, lease_seconds: float) -> bool: ...

    def release(self, run_id: str) -> None: ...


class BaseSubstrate(abc.ABC):
    """Run lifecycle and step dispatch over a small set of storage primitives."""

    def __init__(self, *, poll_interval_seconds: float = 0.05, logger: Any | None = None) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._poll_interval = poll_interval_seconds
        self._mutex = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    # ----------------------------------------------------------------- lifecycle

    def start_run(
        self,
        run_id: str,
        lane: str,
        request: ScanRequest,
        workspace_path: str | Path,
        run_timeout_seconds: float,
        *,
        restarted_from: str | None = None,
        reuse_terminal: bool = True,
    ) -> RunStart:
        if run_timeout_seconds <= 0:
            raise ValueError("run_timeout_seconds must be > 0")
        with self._mutex:
            existing = self._load_run(run_id)
            if existing is not None:
                if not existing.is_terminal or not reuse_terminal:
                    return RunStart(existing, False)
                self._archive_run(existing)
                attempt = existing.attempt + 1
            else:
                attempt = 1

            now = _utc_now()
            run = Run(
                run_id=run_id,
                lane=lane,
                workspace_path=str(workspace_path),
                request=request.to_dict(),
                status=RunStatus.PENDING,
                current_step=PipelineStep.PROVISIONING,
                attempt=attempt,
                restarted_from=restarted_from,
                created_at=now,
                updated_at=now,
                deadline_at=now + timedelta(seconds=run_timeout_seconds),
            )
            self._save_run(run)
            self._reset_control(run_id)
        self._logger.info("run_started", run_id=run_id, lane=lane, attempt=attempt)
        return RunStart(run, True)

    def get_run(self, run_id: str) -> Run | None:
        return self._load_run(run_id)

    def require_run(self, run_id: str) -> Run:
        run = self._load_run(run_id)
        if run is None:
            raise KeyError(f"unknown run: {run_id}")
        return run

    def query_run_input(self, run_id: str) -> ScanRequest | None:
        """The request captured when the current attempt started.

        ``None`` when the run is unknown; ``ValueError`` when the stored input no
        longer parses.
        """

        raw = self._load_request_json(run_id)
        if raw is None:
            return None
        return ScanRequest.from_json(raw)

    def mark_running(self, run_id: str) -> Run:
        with self._mutex:
            run = self.require_run(run_id)
            if run.status is not RunStatus.PENDING:
                return run
            return self._update(run, status=RunStatus.RUNNING)

    def set_current_step(self, run_id: str, step: PipelineStep) -> Run:
        with self._mutex:
            run = self.require_run(run_id)
            if run.is_terminal or run.current_step is step:
                return run
            return self._update(run, current_step=step)

    def annotate(self, run_id: str, metadata: Mapping[str, str]) -> Run:
        with self._mutex:
            run = self.require_run(run_id)
            if run.is_terminal or not metadata:
                return run
            return self._update(run, metadata={**run.metadata, **metadata})

    def complete_run(
        self,
        run_id: str,
        *,
        status: RunStatus,
        success: bool | None = None,
        failure_class: FailureClass | None = None,
        restart_required: bool = False,
        metadata: Mapping[str, str] | None = None,
    ) -> Run:
        status = RunStatus(status)
        if status not in {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}:
            raise ValueError(f"complete_run needs a terminal status, got {status.value}")
        with self._mutex:
            run = self.require_run(run_id)
            if run.is_terminal:
                return run
            now = _utc_now()
            changes: dict[str, Any] = {
                "status": status,
                "success": success,
                "failure_class": failure_class,
                "restart_required": restart_required,
                "metadata": {**run.metadata, **(metadata or {})},
                "finished_at": now,
            }
            if status is RunStatus.COMPLETED:
                changes["current_step"] = PipelineStep.COMPLETED
            completed = self._update(run, **changes)
            self._release_claim(run_id)
        self._logger.info(
            "run_finished",
            run_id=run_id,
            status=status.value,
            success=success,
            failure_class=None if failure_class is None else failure_class.value,
            restart_required=restart_required,
        )
        return completed

    def mark_superseded(self, run_id: str, superseded_by: str) -> Run:
        with self._mutex:
            run = self.require_run(run_id)
            if run.superseded_by == superseded_by:
                return run
            return self._update(run, superseded_by=superseded_by)

    def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        lane: str | None = None,
        restart_required: bool | None = None,
        failure_class: FailureClass | None = None,
        include_superseded: bool = True,
        limit: int = 100,
    ) -> list[Run]:
        if limit <= 0 or limit > 1000:
            raise ValueError("limit must be in [1, 1000]")
        return self._list_runs(
            status=status,
            lane=lane,
            restart_required=restart_required,
            failure_class=failure_class,
            include_superseded=include_superseded,
            limit=limit,
        )

    # ------------------------------------------------------------------- control

    def request_cancel(self, run_id: str) -> bool:
        changed = self._set_cancel_requested(run_id)
        if changed:
            self._logger.info("run_cancel_requested", run_id=run_id)
        return changed

    def is_cancel_requested(self, run_id: str) -> bool:
        return self._cancel_requested(run_id)

    def claim_next(self, lane: str, worker_id: str, lease_seconds: float) -> str | None:
        return self._claim_next(lane, worker_id, lease_seconds)

    def claim(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        return self._claim(run_id, worker_id, lease_seconds)

    def renew_lease(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        return self._renew_lease(run_id, worker_id, lease_seconds)

    def release(self, run_id: str) -> None:
        self._release_claim(run_id)

    def record_heartbeat(self, attempt_id: int) -> None:
        self._heartbeat_attempt(attempt_id)

    def step_attempts(
        self, run_id: str, *, run_attempt: int | None = None
    ) -> list[StepAttemptRecord]:
        return self._list_attempts(run_id, run_attempt)

    def completed_steps(self, run_id: str) -> tuple[str, ...]:
        run = self.require_run(run_id)
        return self._completed_steps(run_id, run.attempt)

    def run_history(self, run_id: str) -> list[Run]:
        """Archived earlier attempts of ``run_id``, oldest first."""

        return self._list_archive(run_id)

    # ------------------------------------------------------------------ dispatch

    def execute_step(
        self,
        run_id: str,
        step: str,
        fn: StepFn,
        options: StepOptions,
        *,
        worker_id: str | None = None,
        lease_seconds: float | None = None,
    ) -> StepResult:
        run = self.require_run(run_id)
        memo = self._load_step(run_id, run.attempt, step)
        if memo is not None:
            self._logger.debug("step_replayed", run_id=run_id, step=step)
            return memo

        self._before_step(run_id, step)
        attempt_number = 0
        while True:
            attempt_number += 1
            self._check_deadline(run)
            if self.is_cancel_requested(run_id):
                raise RunCancelledError(run_id)

            attempt_id = self._start_attempt(run_id, run.attempt, step, attempt_number)
            ctx = StepContext(
                self,
                run_id=run_id,
                run_attempt=run.attempt,
                step=step,
                attempt_number=attempt_number,
                attempt_id=attempt_id,
                worker_id=worker_id,
                lease_seconds=lease_seconds,
            )
            try:
                result = self._supervise(run, ctx, fn, options)
            except SimulatedCrashError:
                raise
            except (RunCancelledError, RunTimeoutError) as exc:
                self._finish_attempt(
                    attempt_id,
                    succeeded=False,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                raise
            except Exception as exc:
                self._finish_attempt(
                    attempt_id,
                    succeeded=False,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                lingering = isinstance(exc, StepTimeoutError) and exc.still_running
                if (
                    lingering
                    or isinstance(exc, DeploymentFailureError)
                    or not options.retryable(exc)
                ):
                    raise StepFailure(step, attempt_number, exc, retries_exhausted=False) from exc
                if attempt_number >= options.retry.maximum_attempts:
                    raise StepFailure(step, attempt_number, exc, retries_exhausted=True) from exc
                delay = options.retry.delay_for(attempt_number)
                self._logger.info(
                    "step_retry_scheduled",
                    run_id=run_id,
                    step=step,
                    attempt=attempt_number,
                    delay_seconds=delay,
                    error_type=type(exc).__name__,
                )
                if options.on_retry is not None:
                    options.on_retry(attempt_number, exc, delay)
                self._pause(run, delay, worker_id=worker_id, lease_seconds=lease_seconds)
                continue

            payload = cast("StepResult", json.loads(canonical_json(dict(result))))
            self._after_step(run_id, step)
            self._finish_attempt(attempt_id, succeeded=True)
            self._record_step(run_id, run.attempt, step, payload)
            stored = self._load_step(run_id, run.attempt, step)
            return stored if stored is not None else payload

    def _supervise(
        self,
        run: Run,
        ctx: StepContext,
        fn: StepFn,
        options: StepOptions,
    ) -> Mapping[str, JSONValue]:
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def target() -> None:
            try:
                outcome["result"] = fn(ctx)
            except BaseException as exc:  # noqa: BLE001 - handed to the supervising thread
                outcome["error"] = exc
            finally:
                done.set()

        thread = threading.Thread(
            target=target, name=f"step-{run.run_id}-{ctx.step}", daemon=True
        )
        started = time.monotonic()
        last_control = started
        last_renewal = started
        thread.start()
        while not done.wait(self._poll_interval):
            now = time.monotonic()
            if (
                options.start_to_close_seconds is not None
                and now - started > options.start_to_close_seconds
            ):
                raise self._abandon_timed_out(
                    run,
                    ctx,
                    done,
                    options,
                    f"exceeded start-to-close timeout of {options.start_to_close_seconds:g}s",
                )
            if (
                options.heartbeat_timeout_seconds is not None
                and now - ctx.last_heartbeat > options.heartbeat_timeout_seconds
            ):
                raise self._abandon_timed_out(
                    run,
                    ctx,
                    done,
                    options,
                    f"heartbeat timed out after {options.heartbeat_timeout_seconds:g}s",
                )
            if ctx.lease_seconds is not None and now - last_renewal >= ctx.lease_seconds / 3:
                last_renewal = now
                ctx.renew_lease()
            if now - last_control >= _CONTROL_CHECK_INTERVAL_SECONDS:
                last_control = now
                if _deadline_passed(run):
                    ctx.abandon()
                    raise RunTimeoutError(run.run_id, _run_timeout_seconds(run))
                if self.is_cancel_requested(run.run_id):
                    ctx.cancel_event.set()
                    if not done.wait(options.cancellation_grace_seconds):
                        ctx.abandon()
                        self._logger.warning(
                            "step_abandoned_after_cancel", run_id=run.run_id, step=ctx.step
                        )
                    raise RunCancelledError(run.run_id)

        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def _abandon_timed_out(
        self,
        run: Run,
        ctx: StepContext,
        done: threading.Event,
        options: StepOptions,
        reason: str,
    ) -> StepTimeoutError:
        """Abandon a timed-out attempt and give it the grace period to exit."""

        ctx.abandon()
        still_running = not done.wait(options.cancellation_grace_seconds)
        if still_running:
            self._logger.warning(
                "step_abandoned_still_running",
                run_id=run.run_id,
                step=ctx.step,
                attempt=ctx.attempt_number,
                grace_seconds=options.cancellation_grace_seconds,
            )
        return StepTimeoutError(ctx.step, reason, still_running=still_running)

    def _check_deadline(self, run: Run) -> None:
        if _deadline_passed(run):
            raise RunTimeoutError(run.run_id, _run_timeout_seconds(run))

    def _pause(
        self,
        run: Run,
        seconds: float,
        *,
        worker_id: str | None,
        lease_seconds: float | None,
    ) -> None:
        """Wait out a retry delay while watching cancellation, the deadline and the lease."""

        end = time.monotonic() + seconds
        while True:
            self._check_deadline(run)
            if self.is_cancel_requested(run.run_id):
                raise RunCancelledError(run.run_id)
            if worker_id is not None and lease_seconds is not None:
                self.renew_lease(run.run_id, worker_id, lease_seconds)
            remaining = end - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, _PAUSE_CHUNK_SECONDS))

    def _before_step(self, run_id: str, step: str) -> None:
        """Hook called before a step that has no memoized result."""

    def _after_step(self, run_id: str, step: str) -> None:
        """Hook called after a step's side effects, before its result is recorded."""

    def _update(self, run: Run, **changes: Any) -> Run:
        updated = dataclasses.replace(run, updated_at=_utc_now(), **changes)
        self._save_run(updated)
        return updated

    # ---------------------------------------------------------------- primitives

    @abc.abstractmethod
    def _load_run(self, run_id: str) -> Run | None: ...

    @abc.abstractmethod
    def _save_run(self, run: Run) -> None: ...

    @abc.abstractmethod
    def _archive_run(self, run: Run) -> None: ...

    @abc.abstractmethod
    def _list_archive(self, run_id: str) -> list[Run]: ...

    @abc.abstractmethod
    def _load_request_json(self, run_id: str) -> str | None: ...

    @abc.abstractmethod
    def _list_runs(
        self,
        *,
        status: RunStatus | None,
        lane: str | None,
        restart_required: bool | None,
        failure_class: FailureClass | None,
        include_superseded: bool,
        limit: int,
    ) -> list[Run]: ...

    @abc.abstractmethod
    def _reset_control(self, run_id: str) -> None: ...

    @abc.abstractmethod
    def _set_cancel_requested(self, run_id: str) -> bool: ...

    @abc.abstractmethod
    def _cancel_requested(self, run_id: str) -> bool: ...

    @abc.abstractmethod
    def _claim_next(self, lane: str, worker_id: str, lease_seconds: float) -> str | None: ...

    @abc.abstractmethod
    def _claim(self, run_id: str, worker_id: str, lease_seconds: float) -> bool: ...

    @abc.abstractmethod
    def _renew_lease(self, run_id: str, worker_id: str, lease_seconds: float) -> bool: ...

    @abc.abstractmethod
    def _release_claim(self, run_id: str) -> None: ...

    @abc.abstractmethod
    def _load_step(self, run_id: str, attempt: int, step: str) -> StepResult | None: ...

    @abc.abstractmethod
    def _record_step(self, run_id: str, attempt: int, step: str, result: StepResult) -> None: ...

    @abc.abstractmethod
    def _completed_steps(self, run_id: str, attempt: int) -> tuple[str, ...]: ...

    @abc.abstractmethod
    def _start_attempt(
        self, run_id: str, run_attempt: int, step: str, attempt_number: int
    ) -> int: ...

    @abc.abstractmethod
    def _heartbeat_attempt(self, attempt_id: int) -> None: ...

    @abc.abstractmethod
    def _finish_attempt(
        self,
        attempt_id: int,
        *,
        succeeded: bool,
        error_type: str | None = None,
        error_message: str | None = None,
    ) -> None: ...

    @abc.abstractmethod
    def _list_attempts(self, run_id: str, run_attempt: int | None) -> list[StepAttemptRecord]: ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _deadline_passed(run: Run) -> bool:
    return run.deadline_at is not None and _utc_now() >= run.deadline_at


def _run_timeout_seconds(run: Run) -> float:
    if run.deadline_at is None:
        return 0.0
    return max((run.deadline_at - run.created_at).total_seconds(), 0.0)


def lease_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return True
    return expires_at < (now if now is not None else _utc_now())


__all__ = [
    "BaseSubstrate",
    "ExecutionSubstrate",
    "RunStart",
    "SimulatedCrashError",
    "StepContext",
    "StepFn",
    "StepResult",
    "lease_expired",
]
