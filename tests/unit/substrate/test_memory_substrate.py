"""
scan-orchestrator — test suite for the in-memory substrate.

File: tests/unit/substrate/test_memory_substrate.py
Last updated: 2026-10-17

Purpose
- Validate the shared run lifecycle and step dispatch: memoization, retries,
  supervision timeouts, cancellation, deadlines and crash injection.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from scan_orchestrator.control_plane.policies import RetryPolicy, StepOptions
from scan_orchestrator.domain.errors import (
    DeploymentFailureError,
    NetworkFailureError,
    RunCancelledError,
    RunTimeoutError,
    StepFailure,
    StepTimeoutError,
)
from scan_orchestrator.domain.models import (
    FailureClass,
    PipelineStep,
    RunStatus,
    ScanRequest,
)
from scan_orchestrator.substrate.base import SimulatedCrashError, StepContext
from scan_orchestrator.substrate.memory import InMemorySubstrate

_RETRYING = StepOptions(
    retry=RetryPolicy(1.0, 2.0, 10.0, 3),
    retryable=lambda exc: isinstance(exc, NetworkFailureError),
)


def _request(build_id: str = "1") -> ScanRequest:
    return ScanRequest(
        app_id="payments",
        component="api",
        build_id=build_id,
        tool_kind="gitleaks",
        repository_url="file:///srv/git/payments.git",
    )


def _start(substrate: InMemorySubstrate, build_id: str = "1", *, timeout: float = 600.0) -> str:
    request = _request(build_id)
    start = substrate.start_run(
        request.run_identity, "default", request, Path("/ws") / request.run_identity, timeout
    )
    return start.run.run_id


def test_start_run_is_idempotent_while_active() -> None:
    substrate = InMemorySubstrate()
    request = _request()

    first = substrate.start_run(request.run_identity, "default", request, "/ws/a", 60)
    second = substrate.start_run(request.run_identity, "priority", request, "/ws/b", 60)

    assert first.created is True
    assert second.created is False
    assert second.run == first.run
    assert first.run.status is RunStatus.PENDING
    assert first.run.current_step is PipelineStep.PROVISIONING
    assert first.run.deadline_at is not None


def test_terminal_run_is_archived_and_restarted() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    substrate.complete_run(run_id, status=RunStatus.FAILED, success=False)

    again = substrate.start_run(run_id, "default", _request(), "/ws", 60)

    assert again.created is True
    assert again.run.attempt == 2
    assert [run.status for run in substrate.run_history(run_id)] == [RunStatus.FAILED]


def test_terminal_run_is_kept_without_reuse() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    substrate.complete_run(run_id, status=RunStatus.COMPLETED, success=True)

    again = substrate.start_run(run_id, "default", _request(), "/ws", 60, reuse_terminal=False)

    assert again.created is False
    assert again.run.status is RunStatus.COMPLETED


def test_start_run_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="run_timeout_seconds"):
        InMemorySubstrate().start_run("payments-api-1-gitleaks", "default", _request(), "/ws", 0)


def test_query_run_input_returns_captured_request() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)

    assert substrate.query_run_input(run_id) == _request()
    assert substrate.query_run_input("payments-api-404-gitleaks") is None


def test_terminal_runs_are_immutable_except_supersession() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    substrate.mark_running(run_id)
    done = substrate.complete_run(
        run_id,
        status=RunStatus.FAILED,
        success=False,
        failure_class=FailureClass.STORAGE,
        restart_required=True,
        metadata={"failureClass": "storage"},
    )

    assert substrate.annotate(run_id, {"late": "value"}) == done
    assert substrate.set_current_step(run_id, PipelineStep.SCANNING) == done
    assert substrate.complete_run(run_id, status=RunStatus.COMPLETED, success=True) == done
    assert substrate.mark_superseded(run_id, "next").superseded_by == "next"
    assert substrate.require_run(run_id).finished_at is not None


def test_complete_run_requires_terminal_status() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)

    with pytest.raises(ValueError, match="terminal status"):
        substrate.complete_run(run_id, status=RunStatus.RUNNING)


def test_require_run_raises_for_unknown() -> None:
    with pytest.raises(KeyError):
        InMemorySubstrate().require_run("payments-api-404-gitleaks")


def test_completed_step_is_memoized() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    calls: list[int] = []

    def fn(ctx: StepContext) -> dict[str, int]:
        calls.append(ctx.attempt_number)
        return {"value": len(calls)}

    first = substrate.execute_step(run_id, "provision", fn, StepOptions())
    second = substrate.execute_step(run_id, "provision", fn, StepOptions())

    assert first == second == {"value": 1}
    assert calls == [1]
    assert substrate.completed_steps(run_id) == ("provision",)


def test_retryable_errors_follow_the_policy() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    retried: list[int] = []
    outcomes: list[Exception | None] = [
        NetworkFailureError("git", "reset"),
        NetworkFailureError("git", "reset"),
        None,
    ]

    def fn(ctx: StepContext) -> dict[str, bool]:
        outcome = outcomes.pop(0)
        if outcome is not None:
            raise outcome
        return {"ok": True}

    options = StepOptions(
        retry=_RETRYING.retry,
        retryable=_RETRYING.retryable,
        on_retry=lambda attempt, exc, delay: retried.append(attempt),
    )

    assert substrate.execute_step(run_id, "provision", fn, options) == {"ok": True}
    assert substrate.sleeps == [1.0, 2.0]
    assert retried == [1, 2]
    history = substrate.step_attempts(run_id)
    assert [item.outcome for item in history] == ["failed", "failed", "succeeded"]
    assert history[0].error_type == "NetworkFailureError"


def test_exhausted_retries_raise_step_failure() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)

    def fn(ctx: StepContext) -> dict[str, bool]:
        raise NetworkFailureError("git", "reset")

    with pytest.raises(StepFailure) as excinfo:
        substrate.execute_step(run_id, "provision", fn, _RETRYING)

    assert excinfo.value.attempts == 3
    assert excinfo.value.retries_exhausted is True
    assert isinstance(excinfo.value.cause, NetworkFailureError)


def test_non_retryable_errors_fail_immediately() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)

    def fn(ctx: StepContext) -> dict[str, bool]:
        raise ValueError("bad report")

    with pytest.raises(StepFailure) as excinfo:
        substrate.execute_step(run_id, "scan", fn, _RETRYING)

    assert excinfo.value.attempts == 1
    assert excinfo.value.retries_exhausted is False
    assert substrate.sleeps == []


def test_deployment_failures_are_never_retried() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)

    def fn(ctx: StepContext) -> dict[str, bool]:
        raise DeploymentFailureError("missing_git", "git not found")

    options = StepOptions(retry=RetryPolicy(1.0, 2.0, 10.0, 5), retryable=lambda exc: True)
    with pytest.raises(StepFailure) as excinfo:
        substrate.execute_step(run_id, "provision", fn, options)

    assert excinfo.value.attempts == 1


def test_start_to_close_timeout_abandons_the_step() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    release = threading.Event()

    def fn(ctx: StepContext) -> dict[str, bool]:
        release.wait(5)
        return {"ok": True}

    try:
        with pytest.raises(StepFailure) as excinfo:
            substrate.execute_step(
                run_id,
                "scan",
                fn,
                StepOptions(start_to_close_seconds=0.05, cancellation_grace_seconds=0.05),
            )
    finally:
        release.set()

    assert isinstance(excinfo.value.cause, StepTimeoutError)
    assert "start-to-close" in str(excinfo.value.cause)


def test_missed_heartbeat_times_out() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    release = threading.Event()

    def fn(ctx: StepContext) -> dict[str, bool]:
        release.wait(5)
        return {"ok": True}

    try:
        with pytest.raises(StepFailure) as excinfo:
            substrate.execute_step(
                run_id,
                "provision",
                fn,
                StepOptions(heartbeat_timeout_seconds=0.05, cancellation_grace_seconds=0.05),
            )
    finally:
        release.set()

    assert "heartbeat timed out" in str(excinfo.value.cause)


def test_timed_out_attempt_exits_before_the_retry_starts() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    lock = threading.Lock()
    active = [0]
    peak = [0]
    calls = [0]

    def fn(ctx: StepContext) -> dict[str, bool]:
        with lock:
            calls[0] += 1
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        try:
            time.sleep(0.3)
        finally:
            with lock:
                active[0] -= 1
        return {"ok": True}

    options = StepOptions(
        start_to_close_seconds=0.05,
        retry=RetryPolicy(1.0, 2.0, 10.0, 3),
        retryable=lambda exc: isinstance(exc, StepTimeoutError),
        cancellation_grace_seconds=2.0,
    )

    with pytest.raises(StepFailure) as excinfo:
        substrate.execute_step(run_id, "provision", fn, options)

    assert excinfo.value.retries_exhausted is True
    assert calls[0] == 3
    assert peak[0] == 1
    cause = excinfo.value.cause
    assert isinstance(cause, StepTimeoutError) and cause.still_running is False


def test_attempt_still_running_after_grace_is_not_retried() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    release = threading.Event()
    calls = [0]

    def fn(ctx: StepContext) -> dict[str, bool]:
        calls[0] += 1
        release.wait(5)
        return {"ok": True}

    options = StepOptions(
        start_to_close_seconds=0.05,
        retry=RetryPolicy(1.0, 2.0, 10.0, 3),
        retryable=lambda exc: isinstance(exc, StepTimeoutError),
        cancellation_grace_seconds=0.05,
    )

    try:
        with pytest.raises(StepFailure) as excinfo:
            substrate.execute_step(run_id, "provision", fn, options)
    finally:
        release.set()

    assert calls[0] == 1
    assert excinfo.value.attempts == 1
    assert excinfo.value.retries_exhausted is False
    cause = excinfo.value.cause
    assert isinstance(cause, StepTimeoutError) and cause.still_running is True
    assert cause.metadata()["stepStillRunning"] == "true"
    assert substrate.sleeps == []


def test_lease_is_renewed_while_a_quiet_step_runs() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    assert substrate.claim(run_id, "worker-a", 0.3)
    stolen: list[str | None] = []

    def fn(ctx: StepContext) -> dict[str, bool]:
        time.sleep(0.8)
        stolen.append(substrate.claim_next("default", "worker-b", 60))
        return {"ok": True}

    substrate.execute_step(
        run_id, "reclaim", fn, StepOptions(), worker_id="worker-a", lease_seconds=0.3
    )

    assert stolen == [None]
    assert substrate.claimed_by(run_id) == "worker-a"


def test_cancel_requested_before_step_raises() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    assert substrate.request_cancel(run_id)

    with pytest.raises(RunCancelledError):
        substrate.execute_step(run_id, "provision", lambda ctx: {"ok": True}, StepOptions())


def test_cancel_during_step_is_observed_by_heartbeat() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    observed = threading.Event()

    def fn(ctx: StepContext) -> dict[str, bool]:
        substrate.request_cancel(run_id)
        try:
            while True:
                ctx.heartbeat()
                time.sleep(0.01)
        except RunCancelledError:
            observed.set()
            raise

    with pytest.raises(RunCancelledError):
        substrate.execute_step(
            run_id, "scan", fn, StepOptions(cancellation_grace_seconds=2.0)
        )

    assert observed.wait(2.0)


def test_request_cancel_ignores_terminal_runs() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    substrate.complete_run(run_id, status=RunStatus.COMPLETED, success=True)

    assert substrate.request_cancel(run_id) is False
    assert substrate.is_cancel_requested(run_id) is False


def test_run_deadline_raises_run_timeout() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate, timeout=0.01)
    time.sleep(0.02)

    with pytest.raises(RunTimeoutError):
        substrate.execute_step(run_id, "provision", lambda ctx: {"ok": True}, StepOptions())


def test_crash_before_step_skips_the_body_once() -> None:
    substrate = InMemorySubstrate(crash_before_steps=["scan"])
    run_id = _start(substrate)
    calls: list[str] = []

    def fn(ctx: StepContext) -> dict[str, bool]:
        calls.append(ctx.step)
        return {"ok": True}

    with pytest.raises(SimulatedCrashError):
        substrate.execute_step(run_id, "scan", fn, StepOptions())
    assert calls == []

    assert substrate.execute_step(run_id, "scan", fn, StepOptions()) == {"ok": True}
    assert calls == ["scan"]
    assert substrate.crashes == [("before", "scan")]


def test_crash_after_step_reruns_the_body() -> None:
    substrate = InMemorySubstrate()
    substrate.crash_after("persist")
    run_id = _start(substrate)
    calls: list[str] = []

    def fn(ctx: StepContext) -> dict[str, int]:
        calls.append(ctx.step)
        return {"calls": len(calls)}

    with pytest.raises(SimulatedCrashError):
        substrate.execute_step(run_id, "persist", fn, StepOptions())

    assert substrate.execute_step(run_id, "persist", fn, StepOptions()) == {"calls": 2}
    assert substrate.completed_steps(run_id) == ("persist",)


def test_claims_and_leases() -> None:
    substrate = InMemorySubstrate()
    older = _start(substrate, "1")
    newer = _start(substrate, "2")

    assert substrate.claim_next("default", "worker-a", 60) == older
    assert substrate.claim_next("default", "worker-b", 60) == newer
    assert substrate.claim_next("default", "worker-c", 60) is None
    assert not substrate.claim(older, "worker-c", 60)
    assert substrate.renew_lease(older, "worker-a", 60)
    assert not substrate.renew_lease(older, "worker-c", 60)

    substrate.complete_run(older, status=RunStatus.COMPLETED, success=True)

    assert substrate.claimed_by(older) is None


def test_expired_lease_is_reclaimable() -> None:
    substrate = InMemorySubstrate()
    run_id = _start(substrate)
    assert substrate.claim(run_id, "worker-a", -1)

    assert substrate.claim_next("default", "worker-b", 60) == run_id
    assert substrate.claimed_by(run_id) == "worker-b"


def test_list_runs_filters_and_validates_limit() -> None:
    substrate = InMemorySubstrate()
    first = _start(substrate, "1")
    _start(substrate, "2")
    substrate.complete_run(
        first,
        status=RunStatus.FAILED,
        success=False,
        failure_class=FailureClass.NETWORK,
        restart_required=True,
    )

    failed = substrate.list_runs(status=RunStatus.FAILED, failure_class=FailureClass.NETWORK)

    assert [run.run_id for run in failed] == [first]
    assert len(substrate.list_runs()) == 2
    with pytest.raises(ValueError, match="limit"):
        substrate.list_runs(limit=1001)
