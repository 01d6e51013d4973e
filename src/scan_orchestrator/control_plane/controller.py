"""
scan-orchestrator — pipeline controller.

File: src/scan_orchestrator/control_plane/controller.py

Purpose
- Drive one Run through admission, provisioning, scan, persist and reclaim on
  top of an ``ExecutionSubstrate``, and turn whatever goes wrong into a
  terminal Run carrying an explanation in its metadata.

Functional requirements
- ``execute`` is re-entrant: completed steps replay from the substrate, so a
  crash at any step boundary resumes where it left off.
- Recovery by failure class:
  Storage, Network and Resource (after retries) end ``failed`` and, when the
  class is restartable, ``restart_required``; Application ends ``completed``
  with ``success=false`` after the result is persisted; Deployment leaves the
  Run active, releases the claim and propagates; cancellation ends
  ``cancelled``; the run deadline ends ``failed(resource)``.
- The workspace is reclaimed only after a successful scan, and never for a
  failed Run.
- Result-store and reclaim errors never fail the Run; they are recorded as
  ``resultStoreError`` / ``reclaimError``.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

from scan_orchestrator.control_plane.admission import AdmissionController, AdmissionSettings
from scan_orchestrator.control_plane.classifier import FailureClassifier, iter_chain
from scan_orchestrator.control_plane.lanes import LaneRouter, LaneSettings
from scan_orchestrator.control_plane.policies import (
    PipelineSettings,
    StepOptions,
    effective_config,
)
from scan_orchestrator.domain.errors import (
    ApplicationFailureError,
    DeploymentFailureError,
    InsufficientSpaceError,
    RunCancelledError,
    RunTimeoutError,
    ScanPipelineError,
    StepFailure,
)
from scan_orchestrator.domain.models import (
    FailureClass,
    JSONValue,
    PipelineStep,
    ProvisionResult,
    Run,
    RunOutcome,
    RunStatus,
    ScanRequest,
    ScanResult,
    ScanSummary,
)
from scan_orchestrator.execution_plane.results import LocalResultStore
from scan_orchestrator.execution_plane.scanner import ScanInvocation, ScanToolRegistry
from scan_orchestrator.integration_plane.git_engine import GitEngine, normalize_origin_url
from scan_orchestrator.integration_plane.provisioning import RepositoryProvisioner
from scan_orchestrator.integration_plane.storage_health import StorageProbe
from scan_orchestrator.integration_plane.workspace_manager import WorkspaceManager
from scan_orchestrator.observability.logging import correlation_scope, redact_text
from scan_orchestrator.substrate.base import BaseSubstrate, StepContext

STEP_ADMISSION: Final[str] = "admission"
STEP_PROVISION: Final[str] = "provision"
STEP_SCAN: Final[str] = "scan"
STEP_PERSIST: Final[str] = "persist"
STEP_RECLAIM: Final[str] = "reclaim"

CLEANUP_DEFERRED_MESSAGE: Final[str] = "Repository retained due to scan failure"
CLEANUP_SKIPPED_MESSAGE: Final[str] = "cleanup_after_scan disabled"

_MAX_METADATA_TEXT: Final[int] = 2048
_RETRYABLE_CLASSES: Final[frozenset[FailureClass]] = frozenset(
    {FailureClass.NETWORK, FailureClass.RESOURCE}
)


@dataclass(frozen=True, slots=True)
class SubmitResult:
    run: Run
    created: bool
    lane: str
    queue: str

    @property
    def run_id(self) -> str:
        return self.run.run_id


@dataclass(frozen=True, slots=True)
class RunReport:
    """What ``execute`` observed; ``executed=False`` when another owner holds the Run."""

    run_id: str
    status: RunStatus
    success: bool | None
    failure_class: FailureClass | None
    restart_required: bool
    outcome: RunOutcome | None
    metadata: dict[str, str] = field(default_factory=dict)
    executed: bool = True

    @classmethod
    def from_run(cls, run: Run, *, executed: bool = True) -> RunReport:
        return cls(
            run_id=run.run_id,
            status=run.status,
            success=run.success,
            failure_class=run.failure_class,
            restart_required=run.restart_required,
            outcome=run.outcome,
            metadata=dict(run.metadata),
            executed=executed,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "success": self.success,
            "failure_class": None if self.failure_class is None else self.failure_class.value,
            "restart_required": self.restart_required,
            "outcome": None if self.outcome is None else self.outcome.value,
            "metadata": dict(sorted(self.metadata.items())),
            "executed": self.executed,
        }


class PipelineController:
    """Run scans through the substrate and apply the failure recovery table."""

    def __init__(
        self,
        substrate: BaseSubstrate,
        *,
        settings: PipelineSettings,
        admission: AdmissionController,
        lane_router: LaneRouter,
        provisioner: RepositoryProvisioner,
        workspace_manager: WorkspaceManager,
        scan_tools: ScanToolRegistry,
        result_store: LocalResultStore,
        classifier: FailureClassifier | None = None,
        logger: Any | None = None,
    ) -> None:
        self._substrate = substrate
        self._settings = settings
        self._admission = admission
        self._lanes = lane_router
        self._provisioner = provisioner
        self._workspaces = workspace_manager
        self._scan_tools = scan_tools
        self._results = result_store
        self._classifier = classifier if classifier is not None else FailureClassifier()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._inline_owner = f"inline-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object] | None,
        substrate: BaseSubstrate,
        *,
        scan_tools: ScanToolRegistry | None = None,
        git_engine: GitEngine | None = None,
        classifier: FailureClassifier | None = None,
        logger: Any | None = None,
    ) -> PipelineController:
        effective = effective_config(config)
        settings = PipelineSettings.from_config(effective)
        workspaces = WorkspaceManager(settings.workspace_root)
        engine = (
            git_engine
            if git_engine is not None
            else GitEngine(
                heartbeat_interval_seconds=max(settings.clone_heartbeat_seconds / 3, 0.1)
            )
        )
        tools_section = effective.get("tools")
        if scan_tools is None:
            scan_tools = ScanToolRegistry.from_config(
                tools_section if isinstance(tools_section, Mapping) else {}
            )
        return cls(
            substrate,
            settings=settings,
            admission=AdmissionController(AdmissionSettings.from_config(effective), logger=logger),
            lane_router=LaneRouter(LaneSettings.from_config(effective)),
            provisioner=RepositoryProvisioner(
                workspaces,
                git_engine=engine,
                storage_probe=StorageProbe(logger=logger),
                logger=logger,
            ),
            workspace_manager=workspaces,
            scan_tools=scan_tools,
            result_store=LocalResultStore(settings.results_root, logger=logger),
            classifier=classifier,
            logger=logger,
        )

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    @property
    def substrate(self) -> BaseSubstrate:
        return self._substrate

    @property
    def lane_router(self) -> LaneRouter:
        return self._lanes

    @property
    def workspace_manager(self) -> WorkspaceManager:
        return self._workspaces

    @property
    def scan_tools(self) -> ScanToolRegistry:
        return self._scan_tools

    # ---------------------------------------------------------------- submission

    def submit(
        self,
        request: ScanRequest,
        *,
        run_id: str | None = None,
        reuse_terminal: bool = True,
        restarted_from: str | None = None,
    ) -> SubmitResult:
        """Start (or resolve) the Run for ``request``; an active duplicate is returned as-is."""

        lane = self._lanes.route(request)
        identity = run_id if run_id is not None else request.run_identity
        workspace = self._workspaces.paths_for(identity).workspace_dir
        start = self._substrate.start_run(
            identity,
            lane,
            request,
            workspace,
            self._settings.run_timeout_for(request),
            restarted_from=restarted_from,
            reuse_terminal=reuse_terminal,
        )
        self._logger.info(
            "run_submitted",
            run_id=identity,
            lane=start.run.lane,
            new_run=start.created,
            attempt=start.run.attempt,
            restarted_from=restarted_from,
        )
        return SubmitResult(
            run=start.run,
            created=start.created,
            lane=start.run.lane,
            queue=self._lanes.queue_for(start.run.lane),
        )

    def run(self, request: ScanRequest) -> RunReport:
        """Submit and execute inline."""

        submitted = self.submit(request)
        return self.execute(submitted.run_id)

    def cancel(self, run_id: str) -> Run:
        """
        Request cancellation of ``run_id``.

        A Run nobody is executing (pending, or orphaned by an expired lease) is
        moved to ``cancelled`` right away; an executing Run observes the request
        at its next heartbeat or step boundary.
        """

        run = self._substrate.require_run(run_id)
        if run.is_terminal:
            return run
        self._substrate.request_cancel(run_id)
        canceller = f"cancel-{uuid.uuid4().hex[:8]}"
        if self._substrate.claim(run_id, canceller, self._settings.lease_seconds):
            return self._finish_cancelled(run_id)
        return self._substrate.require_run(run_id)

    # ----------------------------------------------------------------- execution

    def execute(self, run_id: str, *, worker_id: str | None = None) -> RunReport:
        run = self._substrate.require_run(run_id)
        if run.is_terminal:
            return RunReport.from_run(run, executed=False)

        owner = worker_id if worker_id is not None else self._inline_owner
        if not self._substrate.claim(run_id, owner, self._settings.lease_seconds):
            self._logger.info("run_execution_skipped", run_id=run_id, reason="claimed_elsewhere")
            return RunReport.from_run(run, executed=False)

        with correlation_scope(run_id=run_id, lane=run.lane, worker_id=owner):
            return self._drive(run, owner)

    def _drive(self, run: Run, owner: str) -> RunReport:
        run_id = run.run_id
        try:
            request = self._substrate.query_run_input(run_id)
        except ValueError as exc:
            return self._fail(
                run_id,
                ApplicationFailureError(f"captured request is unreadable: {exc}"),
                step="input",
            )
        if request is None:
            raise KeyError(run_id)

        self._substrate.mark_running(run_id)
        try:
            scan_result, provision = self._provision_and_scan(run, request, owner)
            metadata = self._persist_and_reclaim(run, request, owner, scan_result, provision)
        except StepFailure as failure:
            return self._fail(run_id, failure, step=failure.step)
        except RunCancelledError:
            return self._finish_cancelled(run_id)
        except RunTimeoutError as exc:
            current = self._substrate.require_run(run_id).current_step
            return self._fail(run_id, exc, step=current.value)

        completed = self._substrate.complete_run(
            run_id,
            status=RunStatus.COMPLETED,
            success=scan_result.success,
            failure_class=None if scan_result.success else FailureClass.APPLICATION,
            restart_required=False,
            metadata=metadata,
        )
        self._logger.info(
            "pipeline_run_completed",
            run_id=run_id,
            success=scan_result.success,
            tool_kind=scan_result.tool_kind,
        )
        return RunReport.from_run(completed)

    def _provision_and_scan(
        self, run: Run, request: ScanRequest, owner: str
    ) -> tuple[ScanResult, ProvisionResult | None]:
        run_id = run.run_id
        self._substrate.set_current_step(run_id, PipelineStep.PROVISIONING)
        admitted = self._step(
            run_id,
            STEP_ADMISSION,
            lambda ctx: self._admission.admit(self._workspaces.root, request.config).to_metadata(),
            StepOptions(
                start_to_close_seconds=self._settings.admission_seconds,
                retry=self._settings.space_retry,
                retryable=lambda exc: isinstance(exc, InsufficientSpaceError),
                on_retry=self._admission_retry_annotator(run_id),
                cancellation_grace_seconds=self._settings.cancellation_grace_seconds,
            ),
            owner,
        )
        self._substrate.annotate(run_id, {key: str(value) for key, value in admitted.items()})

        try:
            payload = self._step(
                run_id,
                STEP_PROVISION,
                lambda ctx: self._provision(run, request, ctx),
                self._retrying_options(
                    start_to_close=self._settings.clone_seconds,
                    heartbeat_timeout=self._settings.clone_heartbeat_seconds,
                    run_id=run_id,
                    step=STEP_PROVISION,
                ),
                owner,
            )
        except StepFailure as failure:
            if not self._absorbs(failure):
                raise
            return self._application_result(request, failure), None
        provision = ProvisionResult.from_dict(
            {key: value for key, value in payload.items() if key != "head_commit"}
        )
        head_commit = payload.get("head_commit")
        self._substrate.annotate(
            run_id,
            {
                "repositoryReused": str(provision.reused).lower(),
                "repositorySizeBytes": str(provision.size_bytes),
                **({"headCommit": head_commit} if isinstance(head_commit, str) else {}),
                **({"provisionNotes": "; ".join(provision.notes)} if provision.notes else {}),
            },
        )

        self._substrate.set_current_step(run_id, PipelineStep.SCANNING)
        scan_timeout = self._settings.scan_timeout_for(request)
        try:
            scanned = self._step(
                run_id,
                STEP_SCAN,
                lambda ctx: self._scan(run_id, request, provision, ctx, scan_timeout),
                self._retrying_options(
                    start_to_close=scan_timeout + self._settings.cancellation_grace_seconds,
                    heartbeat_timeout=self._settings.scan_heartbeat_seconds,
                    run_id=run_id,
                    step=STEP_SCAN,
                ),
                owner,
            )
        except StepFailure as failure:
            if not self._absorbs(failure):
                raise
            return self._application_result(request, failure), provision
        return ScanResult.from_dict(scanned), provision

    def _persist_and_reclaim(
        self,
        run: Run,
        request: ScanRequest,
        owner: str,
        scan_result: ScanResult,
        provision: ProvisionResult | None,
    ) -> dict[str, str]:
        run_id = run.run_id
        config = request.config
        metadata: dict[str, str] = {"toolKind": scan_result.tool_kind}
        if scan_result.exit_code is not None:
            metadata["scanExitCode"] = str(scan_result.exit_code)
        if scan_result.error_message:
            metadata["scanErrorMessage"] = _clip(redact_text(scan_result.error_message))

        self._substrate.set_current_step(run_id, PipelineStep.PERSISTING)
        try:
            stored = self._step(
                run_id,
                STEP_PERSIST,
                lambda ctx: self._persist(run, request, scan_result, provision),
                self._retrying_options(
                    start_to_close=self._settings.persist_seconds,
                    heartbeat_timeout=None,
                    run_id=run_id,
                    step=STEP_PERSIST,
                ),
                owner,
            )
        except StepFailure as failure:
            metadata["resultStoreError"] = _clip(redact_text(str(failure.cause)))
            self._logger.warning(
                "result_store_failed",
                run_id=run_id,
                error_type=type(failure.cause).__name__,
            )
        else:
            metadata["resultLocation"] = str(stored.get("location", ""))
            missing = stored.get("missing")
            if isinstance(missing, list) and missing:
                metadata["missingReports"] = ",".join(str(item) for item in missing)

        if not scan_result.success:
            metadata["cleanupDeferred"] = CLEANUP_DEFERRED_MESSAGE
            return metadata
        if not config.cleanup_after_scan:
            metadata["cleanupSkipped"] = CLEANUP_SKIPPED_MESSAGE
            return metadata

        self._substrate.set_current_step(run_id, PipelineStep.RECLAIMING)
        try:
            reclaimed = self._step(
                run_id,
                STEP_RECLAIM,
                lambda ctx: {"reclaimed": self._workspaces.reclaim(run_id)},
                self._retrying_options(
                    start_to_close=self._settings.reclaim_seconds,
                    heartbeat_timeout=None,
                    run_id=run_id,
                    step=STEP_RECLAIM,
                ),
                owner,
            )
        except StepFailure as failure:
            metadata["reclaimError"] = _clip(redact_text(str(failure.cause)))
            self._logger.warning(
                "workspace_reclaim_failed",
                run_id=run_id,
                error_type=type(failure.cause).__name__,
            )
        else:
            metadata["workspaceReclaimed"] = str(bool(reclaimed.get("reclaimed"))).lower()
        return metadata

    # --------------------------------------------------------------- step bodies

    def _provision(self, run: Run, request: ScanRequest, ctx: StepContext) -> dict[str, JSONValue]:
        result = self._provisioner.provision(
            run.run_id,
            request,
            heartbeat=ctx.heartbeat,
            attempt=run.attempt,
        )
        payload = result.to_dict()
        payload["head_commit"] = self._provisioner.git.head_commit(Path(result.repo_path))
        return payload

    def _scan(
        self,
        run_id: str,
        request: ScanRequest,
        provision: ProvisionResult,
        ctx: StepContext,
        timeout_seconds: float,
    ) -> dict[str, JSONValue]:
        paths = self._workspaces.ensure(run_id)
        invocation = ScanInvocation(
            run_id=run_id,
            worktree=Path(provision.repo_path),
            output_dir=paths.output_dir,
            options=dict(request.config.tool_options),
            heartbeat=ctx.heartbeat,
            heartbeat_interval_seconds=max(self._settings.scan_heartbeat_seconds / 3, 0.1),
            timeout_seconds=timeout_seconds,
        )
        return self._scan_tools.run(request.tool_kind, invocation).to_dict()

    def _persist(
        self,
        run: Run,
        request: ScanRequest,
        scan_result: ScanResult,
        provision: ProvisionResult | None,
    ) -> dict[str, JSONValue]:
        current = self._substrate.require_run(run.run_id)
        summary = ScanSummary(
            run_id=run.run_id,
            repository_url=(
                provision.origin
                if provision is not None
                else normalize_origin_url(request.repository_url)
            ),
            success=scan_result.success,
            results=(scan_result,),
            commit_sha=current.metadata.get("headCommit", request.commit_sha),
            metadata={
                "lane": run.lane,
                "attempt": str(run.attempt),
                "appId": request.app_id,
                "component": request.component,
                "buildId": request.build_id,
            },
            total_execution_time_ms=scan_result.execution_time_ms,
        )
        stored = self._results.store(
            summary,
            reports=dict(scan_result.reports),
            store_summary=request.config.store_summary,
            store_reports=request.config.store_reports,
        )
        return {
            "location": stored.location,
            "summary_path": stored.summary_path,
            "reports": dict(stored.report_paths),
            "missing": list(stored.missing),
        }

    # ------------------------------------------------------------------- helpers

    def _step(
        self,
        run_id: str,
        step: str,
        fn: Callable[[StepContext], Mapping[str, JSONValue]],
        options: StepOptions,
        owner: str,
    ) -> dict[str, JSONValue]:
        return self._substrate.execute_step(
            run_id,
            step,
            fn,
            options,
            worker_id=owner,
            lease_seconds=self._settings.lease_seconds,
        )

    def _retrying_options(
        self,
        *,
        start_to_close: float,
        heartbeat_timeout: float | None,
        run_id: str,
        step: str,
    ) -> StepOptions:
        return StepOptions(
            start_to_close_seconds=start_to_close,
            heartbeat_timeout_seconds=heartbeat_timeout,
            retry=self._settings.step_retry,
            retryable=self._is_retryable,
            on_retry=self._retry_annotator(run_id, step),
            cancellation_grace_seconds=self._settings.cancellation_grace_seconds,
        )

    def _is_retryable(self, exc: BaseException) -> bool:
        return self._classifier.classify(exc) in _RETRYABLE_CLASSES

    def _retry_annotator(
        self, run_id: str, step: str
    ) -> Callable[[int, BaseException, float], None]:
        def annotate(attempt: int, exc: BaseException, delay: float) -> None:
            self._substrate.annotate(
                run_id,
                {
                    f"{step}RetryAttempt": str(attempt),
                    f"{step}LastError": _clip(redact_text(f"{type(exc).__name__}: {exc}")),
                },
            )

        return annotate

    def _admission_retry_annotator(
        self, run_id: str
    ) -> Callable[[int, BaseException, float], None]:
        def annotate(attempt: int, exc: BaseException, delay: float) -> None:
            details = exc.metadata() if isinstance(exc, ScanPipelineError) else {}
            self._substrate.annotate(
                run_id,
                {
                    "admissionDeferrals": str(attempt),
                    "admissionNextDelaySeconds": f"{delay:g}",
                    **details,
                },
            )
            self._logger.info(
                "admission_retry_scheduled",
                run_id=run_id,
                deferrals=attempt,
                delay_seconds=delay,
            )

        return annotate

    def _absorbs(self, failure: StepFailure) -> bool:
        failure_class = self._classifier.classify(failure.cause)
        return failure_class is FailureClass.APPLICATION and not self._settings.is_restartable(
            FailureClass.APPLICATION
        )

    def _application_result(self, request: ScanRequest, failure: StepFailure) -> ScanResult:
        self._logger.info(
            "application_failure_recorded",
            step=failure.step,
            error_type=type(failure.cause).__name__,
        )
        return ScanResult.failure(
            request.tool_kind,
            _clip(redact_text(str(failure.cause))),
            failedStep=failure.step,
        )

    def _fail(self, run_id: str, exc: BaseException, *, step: str) -> RunReport:
        classification = self._classifier.explain(exc)
        failure_class = classification.failure_class
        metadata: dict[str, str] = {
            "failureClass": failure_class.value,
            "failedStep": step,
            "failureMessage": _clip(redact_text(classification.message)),
            "failureRule": classification.rule,
        }
        if isinstance(exc, StepFailure):
            metadata["attempts"] = str(exc.attempts)
            metadata["retriesExhausted"] = str(exc.retries_exhausted).lower()
        typed = _first_typed(exc)
        if typed is not None:
            for key, value in typed.metadata().items():
                metadata[key] = _clip(redact_text(value))
        metadata.update(
            self._class_markers(run_id, failure_class, classification.message, metadata)
        )

        if failure_class is FailureClass.DEPLOYMENT:
            self._substrate.annotate(run_id, metadata)
            self._substrate.release(run_id)
            self._logger.error("pipeline_deployment_failure", run_id=run_id, failed_step=step)
            if isinstance(typed, DeploymentFailureError):
                raise typed
            raise DeploymentFailureError("unclassified", classification.message) from exc

        restart = self._settings.is_restartable(failure_class)
        metadata["restartEligible"] = str(restart).lower()
        failed = self._substrate.complete_run(
            run_id,
            status=RunStatus.FAILED,
            success=False,
            failure_class=failure_class,
            restart_required=restart,
            metadata=metadata,
        )
        self._logger.warning(
            "pipeline_run_failed",
            run_id=run_id,
            failure_class=failure_class.value,
            failed_step=step,
            restart_required=restart,
        )
        return RunReport.from_run(failed)

    def _class_markers(
        self,
        run_id: str,
        failure_class: FailureClass,
        message: str,
        present: Mapping[str, str],
    ) -> dict[str, str]:
        """Class marker keys for failures that were classified without a typed error."""

        reason = _clip(redact_text(message))
        if failure_class is FailureClass.STORAGE and "storageFailure" not in present:
            run = self._substrate.require_run(run_id)
            return {
                "storageFailure": "true",
                "storageFailurePath": run.workspace_path,
                "storageFailureReason": reason,
                "workflowRestartRequired": "true",
            }
        if failure_class is FailureClass.NETWORK and "networkFailure" not in present:
            return {"networkFailure": "true", "networkFailureReason": reason}
        if failure_class is FailureClass.RESOURCE and "resourceExhaustion" not in present:
            return {"resourceExhaustion": "true", "resourceFailureReason": reason}
        if failure_class is FailureClass.DEPLOYMENT and "deploymentFailure" not in present:
            return {"deploymentFailure": "true", "deploymentFailureReason": reason}
        return {}

    def _finish_cancelled(self, run_id: str) -> RunReport:
        cancelled = self._substrate.complete_run(
            run_id,
            status=RunStatus.CANCELLED,
            success=False,
            metadata={"cancelledAt": datetime.now(UTC).isoformat()},
        )
        self._logger.info("pipeline_run_cancelled", run_id=run_id)
        return RunReport.from_run(cancelled)


def _first_typed(exc: BaseException) -> ScanPipelineError | None:
    for item in iter_chain(exc):
        if isinstance(item, StepFailure):
            continue
        if isinstance(item, ScanPipelineError):
            return item
    return None


def _clip(text: str) -> str:
    return text if len(text) <= _MAX_METADATA_TEXT else text[: _MAX_METADATA_TEXT - 3] + "..."


__all__ = [
    "CLEANUP_DEFERRED_MESSAGE",
    "CLEANUP_SKIPPED_MESSAGE",
    "PipelineController",
    "RunReport",
    "STEP_ADMISSION",
    "STEP_PERSIST",
    "STEP_PROVISION",
    "STEP_RECLAIM",
    "STEP_SCAN",
    "SubmitResult",
]
