"""
scan-orchestrator — test suite for state store repositories.

File: tests/unit/persistence/test_repositories.py
Last updated: 2026-10-17

Purpose
- Validate run upserts, claims and leases, cancellation flags, memoized steps and the
  step attempt history.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from scan_orchestrator.domain.models import (
    FailureClass,
    PipelineStep,
    Run,
    RunStatus,
    ScanRequest,
)
from scan_orchestrator.persistence.repositories import RunRepo, StepAttemptRepo, StepRepo
from scan_orchestrator.persistence.state_db import StateDB


def _request(build_id: str = "1") -> ScanRequest:
    return ScanRequest(
        app_id="payments",
        component="api",
        build_id=build_id,
        tool_kind="gitleaks",
        repository_url="file:///tmp/origin",
    )


def _run(build_id: str = "1", **overrides: object) -> Run:
    request = _request(build_id)
    values: dict[str, object] = {
        "run_id": request.run_identity,
        "lane": "default",
        "workspace_path": f"/tmp/ws/{request.run_identity}",
        "request": request.to_dict(),
    }
    values.update(overrides)
    return Run(**values)  # type: ignore[arg-type]


@pytest.fixture
def db(tmp_path: Path) -> StateDB:
    return StateDB(tmp_path / "state.sqlite")


def test_upsert_and_get_round_trip(db: StateDB) -> None:
    repo = RunRepo(db)
    run = _run(metadata={"note": "first"})

    repo.upsert(run)
    loaded = repo.get(run.run_id)

    assert loaded is not None
    assert loaded.run_id == run.run_id
    assert loaded.request == run.request
    assert loaded.metadata == {"note": "first"}
    assert loaded.status is RunStatus.PENDING
    assert loaded.created_at == run.created_at


def test_upsert_updates_status_without_touching_claim(db: StateDB) -> None:
    repo = RunRepo(db)
    run = _run()
    repo.upsert(run)
    assert repo.claim(run.run_id, "worker-a", 60)

    repo.upsert(
        _run(
            status=RunStatus.FAILED,
            current_step=PipelineStep.SCANNING,
            success=False,
            failure_class=FailureClass.STORAGE,
            restart_required=True,
            created_at=run.created_at,
        )
    )

    loaded = repo.get(run.run_id)
    control = repo.control(run.run_id)
    assert loaded is not None and control is not None
    assert loaded.failure_class is FailureClass.STORAGE
    assert loaded.restart_required is True
    assert control.claimed_by == "worker-a"


def test_request_json_is_returned_verbatim(db: StateDB) -> None:
    repo = RunRepo(db)
    run = _run()
    repo.upsert(run)

    raw = repo.request_json(run.run_id)

    assert raw is not None
    assert ScanRequest.from_json(raw) == _request()
    assert repo.request_json("unknown-run") is None


def test_get_rejects_unsafe_run_id(db: StateDB) -> None:
    with pytest.raises(ValueError):
        RunRepo(db).get("../escape")


def test_list_filters(db: StateDB) -> None:
    repo = RunRepo(db)
    repo.upsert(_run("1"))
    repo.upsert(
        _run(
            "2",
            status=RunStatus.FAILED,
            success=False,
            failure_class=FailureClass.NETWORK,
            restart_required=True,
        )
    )
    repo.upsert(_run("3", lane="priority"))

    assert [run.run_id for run in repo.list(lane="priority")] == ["payments-api-3-gitleaks"]
    restartable = repo.list(status=RunStatus.FAILED, restart_required=True)
    assert [run.run_id for run in restartable] == ["payments-api-2-gitleaks"]
    assert repo.list(failure_class=FailureClass.STORAGE) == []
    with pytest.raises(ValueError, match="limit"):
        repo.list(limit=0)


def test_list_can_exclude_superseded(db: StateDB) -> None:
    repo = RunRepo(db)
    repo.upsert(_run("1", superseded_by="payments-api-1-gitleaks-restart-5"))
    repo.upsert(_run("2"))

    ids = [run.run_id for run in repo.list(include_superseded=False)]

    assert ids == ["payments-api-2-gitleaks"]


def test_archive_keeps_one_entry_per_attempt(db: StateDB) -> None:
    repo = RunRepo(db)
    first = _run(status=RunStatus.FAILED, success=False)
    repo.archive(first)
    repo.archive(first)
    repo.archive(_run(attempt=2, status=RunStatus.COMPLETED, success=True))

    archived = repo.list_archive(first.run_id)

    assert [run.attempt for run in archived] == [1, 2]
    assert archived[0].status is RunStatus.FAILED


def test_claim_next_orders_by_creation_and_respects_leases(db: StateDB) -> None:
    repo = RunRepo(db)
    older = _run("1")
    newer = _run("2")
    repo.upsert(older)
    repo.upsert(newer)

    assert repo.claim_next("default", "worker-a", 60) == older.run_id
    assert repo.claim_next("default", "worker-b", 60) == newer.run_id
    assert repo.claim_next("default", "worker-c", 60) is None
    assert repo.claim_next("priority", "worker-c", 60) is None


def test_expired_lease_can_be_reclaimed(db: StateDB) -> None:
    repo = RunRepo(db)
    run = _run()
    repo.upsert(run)

    assert repo.claim(run.run_id, "worker-a", -1)
    assert repo.claim(run.run_id, "worker-b", 60)
    assert not repo.claim(run.run_id, "worker-c", 60)
    assert repo.claim(run.run_id, "worker-b", 60)


def test_renew_lease_requires_ownership(db: StateDB) -> None:
    repo = RunRepo(db)
    run = _run()
    repo.upsert(run)
    repo.claim(run.run_id, "worker-a", 60)

    assert repo.renew_lease(run.run_id, "worker-a", 120)
    assert not repo.renew_lease(run.run_id, "worker-b", 120)

    repo.release(run.run_id)
    control = repo.control(run.run_id)
    assert control is not None
    assert control.claimed_by is None
    assert control.lease_expires_at is None


def test_cancel_flag_only_applies_to_active_runs(db: StateDB) -> None:
    repo = RunRepo(db)
    active = _run("1")
    finished = _run("2", status=RunStatus.COMPLETED, success=True)
    repo.upsert(active)
    repo.upsert(finished)

    assert repo.set_cancel_requested(active.run_id)
    assert not repo.set_cancel_requested(finished.run_id)
    assert repo.claim_next("default", "worker-a", 60) is None

    repo.reset_control(active.run_id)
    control = repo.control(active.run_id)
    assert control is not None and control.cancel_requested is False


def test_step_results_are_first_write_wins(db: StateDB) -> None:
    runs = RunRepo(db)
    steps = StepRepo(db)
    run = _run()
    runs.upsert(run)

    assert steps.record(run.run_id, 1, "provision", {"reused": False})
    assert not steps.record(run.run_id, 1, "provision", {"reused": True})
    steps.record(run.run_id, 1, "scan", {"success": True})

    assert steps.get(run.run_id, 1, "provision") == {"reused": False}
    assert steps.get(run.run_id, 2, "provision") is None
    assert set(steps.completed_steps(run.run_id, 1)) == {"provision", "scan"}


def test_step_attempt_history(db: StateDB) -> None:
    runs = RunRepo(db)
    attempts = StepAttemptRepo(db)
    run = _run()
    runs.upsert(run)

    first = attempts.start(run.run_id, 1, "provision", 1)
    attempts.heartbeat(first)
    attempts.finish(first, succeeded=False, error_type="NetworkError", error_message="x" * 5000)
    second = attempts.start(run.run_id, 1, "provision", 2)
    attempts.finish(second, succeeded=True)

    records = attempts.list_for_run(run.run_id, run_attempt=1)

    assert [record.outcome for record in records] == ["failed", "succeeded"]
    assert records[0].heartbeat_at is not None
    assert records[0].error_type == "NetworkError"
    assert records[0].error_message is not None and len(records[0].error_message) == 4096
    assert attempts.list_for_run(run.run_id, run_attempt=2) == []
