"""Command-line interface router for scan-orchestrator."""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import yaml

from scan_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    assert_valid_config,
    load_config,
    redact_config,
)
from scan_orchestrator.control_plane.controller import PipelineController, RunReport
from scan_orchestrator.control_plane.restart import (
    ALL_FAILURE_TYPES,
    RestartCoordinator,
    RestartReport,
    RestartSettings,
)
from scan_orchestrator.domain.models import FailureClass, Run, RunStatus, ScanRequest
from scan_orchestrator.observability import StructuredLoggingHandle, setup_logging
from scan_orchestrator.persistence import RunRepo, StateDB
from scan_orchestrator.substrate import SQLiteSubstrate
from scan_orchestrator.ui.render import CLIRenderer, create_renderer
from scan_orchestrator.worker import DeploymentHealthCheck, Worker

DEFAULT_STATE_DB_PATH: Final[str] = "state/scanorch.sqlite"
STATUS_LIST_LIMIT: Final[int] = 20
FAILURE_TYPE_CHOICES: Final[tuple[str, ...]] = (
    *(item.value for item in FailureClass),
    ALL_FAILURE_TYPES,
)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="scanorch",
        description=(
            "scan-orchestrator — failure-aware repository scan pipelines.\n\n"
            "Common workflows:\n"
            "  scanorch submit request.yaml --execute   Run one scan inline\n"
            "  scanorch worker                          Serve the lane queues\n"
            "  scanorch restart --once                  Resubmit restart-eligible runs\n"
            "  scanorch doctor                          Check host readiness\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to scanorch TOML config (default: ./scanorch.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # submit --------------------------------------------------------------
    submit_parser = subparsers.add_parser(
        "submit",
        parents=[common],
        help="Submit a scan request (YAML or JSON)",
        description=(
            "Create or resolve the Run for a scan request.\n\n"
            "Examples:\n"
            "  scanorch submit request.yaml\n"
            "  scanorch submit request.json --execute\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    submit_parser.add_argument("request", help="Path to the scan request file.")
    submit_parser.add_argument(
        "--execute",
        action="store_true",
        default=False,
        help="Execute the Run inline instead of leaving it for a worker.",
    )
    submit_parser.add_argument(
        "--run-id",
        default=None,
        help="Explicit run identity (default: derived from the request).",
    )
    submit_parser.set_defaults(handler=_cmd_submit)

    # worker --------------------------------------------------------------
    worker_parser = subparsers.add_parser(
        "worker",
        parents=[common],
        help="Serve lane queues until interrupted",
    )
    worker_parser.add_argument(
        "--lane",
        action="append",
        default=None,
        help="Lane to serve (repeatable; default: worker.lanes from config).",
    )
    worker_parser.add_argument("--worker-id", default=None, help="Stable worker identity.")
    worker_parser.add_argument(
        "--drain",
        action="store_true",
        default=False,
        help="Exit once the queues are empty and nothing is in flight.",
    )
    worker_parser.set_defaults(handler=_cmd_worker)

    # restart -------------------------------------------------------------
    restart_parser = subparsers.add_parser(
        "restart",
        parents=[common],
        help="Resubmit failed, restart-eligible runs",
    )
    restart_parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single restart pass and exit.",
    )
    restart_parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop looping after this many passes.",
    )
    restart_parser.add_argument(
        "--failure-type",
        choices=FAILURE_TYPE_CHOICES,
        default=None,
        help="Failure class to restart (default: restart.failure_type).",
    )
    restart_parser.add_argument(
        "--reuse-id",
        action="store_true",
        default=False,
        help="Restart under the original run identity instead of a new one.",
    )
    restart_parser.add_argument(
        "--execute",
        action="store_true",
        default=False,
        help="Execute restarted runs inline.",
    )
    restart_parser.set_defaults(handler=_cmd_restart)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show one run, or the most recent runs",
    )
    status_parser.add_argument("run_id", nargs="?", default=None, help="Run identity.")
    status_parser.add_argument(
        "--status",
        dest="status_filter",
        choices=[item.value for item in RunStatus],
        default=None,
        help="Only list runs with this status.",
    )
    status_parser.add_argument("--lane", default=None, help="Only list runs in this lane.")
    status_parser.add_argument(
        "--limit",
        type=int,
        default=STATUS_LIST_LIMIT,
        help=f"Maximum runs to list (default: {STATUS_LIST_LIMIT}).",
    )
    status_parser.set_defaults(handler=_cmd_status)

    # cancel --------------------------------------------------------------
    cancel_parser = subparsers.add_parser(
        "cancel",
        parents=[common],
        help="Request cancellation of a run",
    )
    cancel_parser.add_argument("run_id", help="Run identity.")
    cancel_parser.set_defaults(handler=_cmd_cancel)

    # doctor --------------------------------------------------------------
    doctor_parser = subparsers.add_parser(
        "doctor",
        parents=[common],
        help="Check config, state store, git and tool binaries",
    )
    doctor_parser.set_defaults(handler=_cmd_doctor)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective (redacted) configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_submit(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    request = _load_request(_require_str(args.request, "request"))
    run_id = _optional_str(getattr(args, "run_id", None))

    handle = _start_logging(config, "submit") if _flag(args, "execute") else None
    try:
        controller = _build_controller(config)
        try:
            submitted = controller.submit(request, run_id=run_id)
        except ValueError as exc:
            raise CLIError(f"invalid submission: {exc}", exit_code=2) from exc
        report = controller.execute(submitted.run_id) if _flag(args, "execute") else None
    finally:
        if handle is not None:
            handle.shutdown()

    payload: dict[str, object] = {
        "command": "submit",
        "run_id": submitted.run_id,
        "created": submitted.created,
        "lane": submitted.lane,
        "queue": submitted.queue,
        "report": None if report is None else report.to_dict(),
    }
    exit_code = 0 if report is None else _report_exit_code(report)
    if _flag(args, "json"):
        _emit_json(payload)
        return exit_code

    renderer = _get_renderer(args)
    renderer.kv("Run", submitted.run_id)
    renderer.kv("Created", "yes" if submitted.created else "no (resolved to existing run)")
    renderer.kv("Lane", submitted.lane)
    renderer.kv("Queue", submitted.queue)
    if report is not None:
        _render_report(renderer, report)
    return exit_code


def _cmd_worker(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    lanes = _string_sequence(getattr(args, "lane", None))
    handle = _start_logging(config, "worker")
    stop = threading.Event()
    try:
        controller = _build_controller(config)
        worker = Worker.from_config(
            config,
            controller,
            lanes=lanes or None,
            worker_id=_optional_str(getattr(args, "worker_id", None)),
            health_check=DeploymentHealthCheck.from_config(config, create_missing=True),
        )
        try:
            stats = worker.run(stop, drain=_flag(args, "drain"))
        except KeyboardInterrupt:
            stop.set()
            stats = worker.stats
    finally:
        handle.shutdown()

    payload: dict[str, object] = {
        "command": "worker",
        "worker_id": worker.worker_id,
        "lanes": list(worker.lanes),
        "dispatched": stats.dispatched,
        "completed": stats.completed,
        "errored": stats.errored,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Worker", worker.worker_id)
    renderer.kv("Lanes", ", ".join(worker.lanes))
    renderer.kv("Dispatched", stats.dispatched)
    renderer.kv("Completed", stats.completed)
    renderer.kv("Errored", stats.errored)
    return 0


def _cmd_restart(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = RestartSettings.from_config(config)
    failure_type = _optional_str(getattr(args, "failure_type", None))
    if failure_type is not None:
        settings = dataclasses.replace(settings, failure_type=failure_type)
    if _flag(args, "reuse_id"):
        settings = dataclasses.replace(settings, use_new_run_id=False)
    max_cycles = getattr(args, "max_cycles", None)
    if max_cycles is not None and max_cycles < 1:
        raise CLIError("--max-cycles must be >= 1", exit_code=2)

    handle = _start_logging(config, "restart")
    try:
        controller = _build_controller(config)
        coordinator = RestartCoordinator(
            controller,
            settings=settings,
            execute=_flag(args, "execute"),
        )
        if _flag(args, "once"):
            reports = [coordinator.run_once()]
        else:
            stop = threading.Event()
            try:
                reports = coordinator.run_forever(stop, max_cycles=max_cycles)
            except KeyboardInterrupt:
                stop.set()
                reports = []
    finally:
        handle.shutdown()

    payload: dict[str, object] = {
        "command": "restart",
        "failure_type": settings.failure_type,
        "use_new_run_id": settings.use_new_run_id,
        "passes": [report.to_dict() for report in reports],
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Failure type", settings.failure_type)
    for index, report in enumerate(reports, start=1):
        _render_restart(renderer, index, report)
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    substrate = SQLiteSubstrate(_state_db_path(config))
    run_id = _optional_str(getattr(args, "run_id", None))

    if run_id is not None:
        run = _safe_get_run(substrate, run_id)
        if run is None:
            raise CLIError(f"run not found: {run_id}", exit_code=1)
        attempts = substrate.step_attempts(run_id, run_attempt=run.attempt)
        history = substrate.run_history(run_id)
        payload: dict[str, object] = {
            "command": "status",
            "run": _summarize_run(run),
            "steps": [
                {
                    "step": item.step,
                    "attempt": item.attempt_number,
                    "outcome": item.outcome,
                    "error_type": item.error_type,
                }
                for item in attempts
            ],
            "history": [_summarize_run(item) for item in history],
        }
        if _flag(args, "json"):
            _emit_json(payload)
            return 0

        renderer = _get_renderer(args)
        _render_run(renderer, run)
        renderer.table(
            ("step", "attempt", "outcome", "error"),
            [
                (item.step, str(item.attempt_number), item.outcome, item.error_type or "")
                for item in attempts
            ],
            title="Step attempts:",
        )
        if history:
            renderer.kv("Earlier attempts", len(history))
        return 0

    limit = getattr(args, "limit", STATUS_LIST_LIMIT)
    if not isinstance(limit, int) or not 1 <= limit <= 1000:
        raise CLIError("--limit must be in [1, 1000]", exit_code=2)
    status_filter = _optional_str(getattr(args, "status_filter", None))
    runs = substrate.list_runs(
        status=None if status_filter is None else RunStatus(status_filter),
        lane=_optional_str(getattr(args, "lane", None)),
        limit=limit,
    )
    list_payload: dict[str, object] = {
        "command": "status",
        "runs": [_summarize_run(run) for run in runs],
    }
    if _flag(args, "json"):
        _emit_json(list_payload)
        return 0

    renderer = _get_renderer(args)
    if not runs:
        renderer.text(f"No runs found in {_state_db_path(config)}")
        return 0
    renderer.table(
        ("run", "lane", "status", "step", "attempt", "failure"),
        [
            (
                run.run_id,
                run.lane,
                run.status.value,
                run.current_step.value,
                str(run.attempt),
                "" if run.failure_class is None else run.failure_class.value,
            )
            for run in runs
        ],
    )
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _require_str(args.run_id, "run_id")
    controller = _build_controller(config)
    try:
        run = controller.cancel(run_id)
    except KeyError as exc:
        raise CLIError(f"run not found: {run_id}", exit_code=1) from exc
    except ValueError as exc:
        raise CLIError(f"invalid run id: {exc}", exit_code=2) from exc

    payload: dict[str, object] = {
        "command": "cancel",
        "run_id": run.run_id,
        "status": run.status.value,
        "cancel_requested": not run.is_terminal,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Run", run.run_id)
    renderer.kv("Status", run.status.value)
    if not run.is_terminal:
        renderer.text("Cancellation requested; the executing worker will stop at its next check.")
    return 0


def _cmd_doctor(args: argparse.Namespace) -> int:
    checks: list[tuple[str, bool, str]] = []

    config: dict[str, object] | None = None
    try:
        config = _load_effective_config(args)
        checks.append(("config", True, "loaded successfully"))
    except CLIError as exc:
        checks.append(("config", False, str(exc)))

    deployment_healthy = False
    if config is not None:
        state_db_path = _state_db_path(config)
        try:
            if state_db_path.exists():
                run_count = len(RunRepo(StateDB(state_db_path)).list(limit=1000))
                checks.append(("state_db", True, f"readable, {run_count} run(s)"))
            else:
                checks.append(("state_db", True, "not yet created (created on first submit)"))
        except Exception as exc:  # noqa: BLE001 - doctor reports instead of crashing
            checks.append(("state_db", False, str(exc)))

        report = DeploymentHealthCheck.from_config(config).run()
        deployment_healthy = report.healthy
        for check in report.checks:
            checks.append((check.name, check.passed, check.detail))
    else:
        checks.append(("state_db", False, "skipped (config failed)"))

    exit_code = 0 if config is not None and deployment_healthy else 3
    if config is None:
        exit_code = 2

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "doctor",
                "healthy": exit_code == 0,
                "checks": [
                    {"name": name, "status": "ok" if passed else "fail", "detail": detail}
                    for name, passed, detail in checks
                ],
            }
        )
        return exit_code

    renderer = _get_renderer(args)
    renderer.heading("scanorch doctor")
    for name, passed, detail in checks:
        if passed:
            renderer.ok(f"{name}: {detail}")
        else:
            renderer.fail(f"{name}: {detail}")
    if exit_code == 0:
        renderer.text("\nAll checks passed.")
    else:
        renderer.text("\nSome checks failed. See details above.")
    return exit_code


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = redact_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "config": redacted,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _render_report(renderer: CLIRenderer, report: RunReport) -> None:
    renderer.kv("Status", report.status.value)
    if report.outcome is not None:
        renderer.kv("Outcome", report.outcome.value)
    if report.failure_class is not None:
        renderer.kv("Failure class", report.failure_class.value)
        renderer.kv("Restart required", "yes" if report.restart_required else "no")
    if not report.executed:
        renderer.warning("run was not executed here (terminal or claimed by another worker)")
    if renderer.verbose:
        for key, value in sorted(report.metadata.items()):
            renderer.kv(f"  {key}", value)


def _render_run(renderer: CLIRenderer, run: Run) -> None:
    renderer.kv("Run", run.run_id)
    renderer.kv("Lane", run.lane)
    renderer.kv("Status", run.status.value)
    renderer.kv("Step", run.current_step.value)
    renderer.kv("Attempt", run.attempt)
    if run.failure_class is not None:
        renderer.kv("Failure class", run.failure_class.value)
        renderer.kv("Restart required", "yes" if run.restart_required else "no")
    if run.restarted_from is not None:
        renderer.kv("Restarted from", run.restarted_from)
    if run.superseded_by is not None:
        renderer.kv("Superseded by", run.superseded_by)
    renderer.kv("Created", run.created_at.isoformat())
    renderer.kv(
        "Finished",
        run.finished_at.isoformat() if run.finished_at is not None else "(in progress)",
    )
    if run.metadata:
        renderer.section("Metadata:")
        for key, value in sorted(run.metadata.items()):
            renderer.text(f"  {key}: {value}")


def _render_restart(renderer: CLIRenderer, index: int, report: RestartReport) -> None:
    renderer.section(
        f"Pass {index}: restarted={len(report.restarted)} skipped={len(report.skipped)}"
    )
    renderer.table(
        ("run", "class", "status", "new run", "reason"),
        [
            (
                item.run_id,
                "" if item.failure_class is None else item.failure_class.value,
                item.status.value,
                item.new_run_id or "",
                item.reason,
            )
            for item in report.outcomes
        ],
    )


def _summarize_run(run: Run) -> dict[str, object]:
    return {
        "run_id": run.run_id,
        "lane": run.lane,
        "status": run.status.value,
        "current_step": run.current_step.value,
        "attempt": run.attempt,
        "success": run.success,
        "failure_class": None if run.failure_class is None else run.failure_class.value,
        "restart_required": run.restart_required,
        "restarted_from": run.restarted_from,
        "superseded_by": run.superseded_by,
        "created_at": run.created_at.isoformat(),
        "finished_at": None if run.finished_at is None else run.finished_at.isoformat(),
        "metadata": dict(sorted(run.metadata.items())),
    }


def _report_exit_code(report: RunReport) -> int:
    if report.status is RunStatus.COMPLETED and report.success:
        return 0
    return 1


# ---------------------------------------------------------------------------
# Config and wiring helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, object]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        loaded = load_config(config_path, profile=profile)
        validated = assert_valid_config(loaded, active_profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    return {key: value for key, value in validated.items()}


def _load_request(path_arg: str) -> ScanRequest:
    path = Path(path_arg).expanduser()
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"cannot read request file {path}: {exc}", exit_code=2) from exc
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise CLIError(f"request file {path} is not valid YAML/JSON: {exc}", exit_code=2) from exc
    if not isinstance(payload, Mapping):
        raise CLIError(f"request file {path} must contain a mapping", exit_code=2)
    try:
        return ScanRequest.from_dict(payload)
    except (TypeError, ValueError) as exc:
        raise CLIError(f"invalid scan request in {path}: {exc}", exit_code=2) from exc


def _state_db_path(config: Mapping[str, object]) -> Path:
    paths = config.get("paths")
    raw = paths.get("state_db") if isinstance(paths, Mapping) else None
    return Path(raw if isinstance(raw, str) and raw else DEFAULT_STATE_DB_PATH).expanduser()


def _build_controller(config: Mapping[str, object]) -> PipelineController:
    substrate = SQLiteSubstrate(_state_db_path(config))
    return PipelineController.from_config(config, substrate)


def _start_logging(config: Mapping[str, object], service: str) -> StructuredLoggingHandle:
    observability = config.get("observability")
    return setup_logging(
        observability if isinstance(observability, Mapping) else None,
        service=f"scanorch-{service}",
    )


def _safe_get_run(substrate: SQLiteSubstrate, run_id: str) -> Run | None:
    try:
        return substrate.get_run(run_id)
    except ValueError as exc:
        raise CLIError(f"invalid run id: {exc}", exit_code=2) from exc


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=2)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=2)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _string_sequence(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        cleaned = value.strip()
        return () if not cleaned else (cleaned,)
    if not isinstance(value, Sequence):
        raise CLIError("invalid sequence argument", exit_code=2)

    parsed: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise CLIError("invalid sequence argument", exit_code=2)
        cleaned = item.strip()
        if cleaned:
            parsed.append(cleaned)
    return tuple(parsed)


__all__ = [
    "CLIError",
    "build_parser",
    "main",
    "run_cli",
]


if __name__ == "__main__":
    raise SystemExit(run_cli())
