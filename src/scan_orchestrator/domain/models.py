"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from scan_orchestrator.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_OUTPUT_TEXT = 64 * 1024
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 512


class ScanPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class CloneStrategy(StrEnum):
    FULL = "full"
    SHALLOW = "shallow"
    SINGLE_BRANCH = "single_branch"
    SHALLOW_SINGLE_BRANCH = "shallow_single_branch"

    @property
    def is_shallow(self) -> bool:
        return self in {CloneStrategy.SHALLOW, CloneStrategy.SHALLOW_SINGLE_BRANCH}

    @property
    def is_single_branch(self) -> bool:
        return self in {CloneStrategy.SINGLE_BRANCH, CloneStrategy.SHALLOW_SINGLE_BRANCH}


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineStep(StrEnum):
    PROVISIONING = "provisioning"
    SCANNING = "scanning"
    PERSISTING = "persisting"
    RECLAIMING = "reclaiming"
    COMPLETED = "completed"


class FailureClass(StrEnum):
    STORAGE = "storage"
    NETWORK = "network"
    RESOURCE = "resource"
    DEPLOYMENT = "deployment"
    APPLICATION = "application"


class RunOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    RESTART_REQUIRED = "restart_required"


ACTIVE_RUN_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


@dataclass(frozen=True, slots=True)
class ScanConfig(CanonicalModel):
    """Per-request pipeline configuration.

    ``tool_options`` is handed to the scanning tool untouched; everything else is
    interpreted by the orchestrator (admission, provisioning, routing, cleanup).
    """

    clone_strategy: CloneStrategy = CloneStrategy.SHALLOW
    shallow_clone_depth: int = 1
    sparse_checkout_paths: tuple[str, ...] = ()
    max_workspace_bytes: int | None = None
    scan_timeout_seconds: int | None = None
    run_timeout_seconds: int | None = None
    lane: str | None = None
    cleanup_after_scan: bool = True
    store_summary: bool = True
    store_reports: bool = True
    tool_options: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "clone_strategy",
            _as_enum(CloneStrategy, self.clone_strategy, "ScanConfig.clone_strategy"),
        )
        _as_int(self.shallow_clone_depth, "ScanConfig.shallow_clone_depth", minimum=1)
        object.__setattr__(
            self,
            "sparse_checkout_paths",
            _as_str_tuple(self.sparse_checkout_paths, "ScanConfig.sparse_checkout_paths"),
        )
        for name in ("max_workspace_bytes", "scan_timeout_seconds", "run_timeout_seconds"):
            value = getattr(self, name)
            if value is not None:
                _as_int(value, f"ScanConfig.{name}", minimum=1)
        if self.lane is not None:
            try:
                domain_ids.validate_lane_name(self.lane)
            except ValueError as exc:
                _fail("ScanConfig.lane", str(exc))
        _as_bool(self.cleanup_after_scan, "ScanConfig.cleanup_after_scan")
        _as_bool(self.store_summary, "ScanConfig.store_summary")
        _as_bool(self.store_reports, "ScanConfig.store_reports")
        object.__setattr__(
            self, "tool_options", _as_str_dict(self.tool_options, "ScanConfig.tool_options")
        )

    @property
    def uses_sparse_checkout(self) -> bool:
        return bool(self.sparse_checkout_paths)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ScanConfig:
        parsed = _expect_object(
            data,
            "ScanConfig",
            required=set(),
            optional={item.name for item in fields(cls)},
        )
        return cls(
            clone_strategy=_as_enum(
                CloneStrategy,
                parsed.get("clone_strategy", CloneStrategy.SHALLOW.value),
                "ScanConfig.clone_strategy",
            ),
            shallow_clone_depth=_as_int(
                parsed.get("shallow_clone_depth", 1), "ScanConfig.shallow_clone_depth", minimum=1
            ),
            sparse_checkout_paths=_as_str_tuple(
                parsed.get("sparse_checkout_paths", ()), "ScanConfig.sparse_checkout_paths"
            ),
            max_workspace_bytes=_optional_int(parsed.get("max_workspace_bytes")),
            scan_timeout_seconds=_optional_int(parsed.get("scan_timeout_seconds")),
            run_timeout_seconds=_optional_int(parsed.get("run_timeout_seconds")),
            lane=_as_optional_str(parsed.get("lane"), "ScanConfig.lane"),
            cleanup_after_scan=_as_bool(
                parsed.get("cleanup_after_scan", True), "ScanConfig.cleanup_after_scan"
            ),
            store_summary=_as_bool(parsed.get("store_summary", True), "ScanConfig.store_summary"),
            store_reports=_as_bool(parsed.get("store_reports", True), "ScanConfig.store_reports"),
            tool_options=_as_str_dict(parsed.get("tool_options", {}), "ScanConfig.tool_options"),
        )


@dataclass(frozen=True, slots=True)
class ScanRequest(CanonicalModel):
    """Inbound scan request; its canonical JSON is captured verbatim on the Run."""

    app_id: str
    component: str
    build_id: str
    tool_kind: str
    repository_url: str
    branch: str | None = None
    commit_sha: str | None = None
    priority: ScanPriority = ScanPriority.NORMAL
    config: ScanConfig = field(default_factory=ScanConfig)

    def __post_init__(self) -> None:
        for name in ("app_id", "component", "build_id", "tool_kind"):
            try:
                domain_ids.validate_id_part(getattr(self, name), name)
            except ValueError as exc:
                _fail(f"ScanRequest.{name}", str(exc))
        object.__setattr__(
            self,
            "repository_url",
            _as_str(self.repository_url, "ScanRequest.repository_url", max_len=2048),
        )
        if self.branch is not None:
            object.__setattr__(
                self, "branch", _as_str(self.branch, "ScanRequest.branch", max_len=256)
            )
        if self.commit_sha is not None:
            object.__setattr__(
                self,
                "commit_sha",
                _as_str(self.commit_sha, "ScanRequest.commit_sha", max_len=64),
            )
        object.__setattr__(
            self, "priority", _as_enum(ScanPriority, self.priority, "ScanRequest.priority")
        )
        if not isinstance(self.config, ScanConfig):
            _fail("ScanRequest.config", "must be ScanConfig")

    @property
    def run_identity(self) -> str:
        return domain_ids.derive_run_id(self.app_id, self.component, self.build_id, self.tool_kind)

    @property
    def requested_ref(self) -> str | None:
        """Commit SHA wins over branch when both are present."""

        return self.commit_sha or self.branch

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ScanRequest:
        parsed = _expect_object(
            data,
            "ScanRequest",
            required={"app_id", "component", "build_id", "tool_kind", "repository_url"},
            optional={"branch", "commit_sha", "priority", "config"},
        )
        config_raw = parsed.get("config")
        if config_raw is None:
            config = ScanConfig()
        elif isinstance(config_raw, Mapping):
            config = ScanConfig.from_dict(config_raw)
        else:
            _fail("ScanRequest.config", f"expected object, got {type(config_raw).__name__}")
        return cls(
            app_id=_as_str(parsed["app_id"], "ScanRequest.app_id"),
            component=_as_str(parsed["component"], "ScanRequest.component"),
            build_id=_as_str(parsed["build_id"], "ScanRequest.build_id"),
            tool_kind=_as_str(parsed["tool_kind"], "ScanRequest.tool_kind"),
            repository_url=_as_str(parsed["repository_url"], "ScanRequest.repository_url"),
            branch=_as_optional_str(parsed.get("branch"), "ScanRequest.branch"),
            commit_sha=_as_optional_str(parsed.get("commit_sha"), "ScanRequest.commit_sha"),
            priority=_as_enum(
                ScanPriority,
                parsed.get("priority", ScanPriority.NORMAL.value),
                "ScanRequest.priority",
            ),
            config=config,
        )


@dataclass(frozen=True, slots=True)
class Run(CanonicalModel):
    """One execution attempt of the pipeline for a request tuple."""

    run_id: str
    lane: str
    workspace_path: str
    request: dict[str, JSONValue]
    status: RunStatus = RunStatus.PENDING
    current_step: PipelineStep = PipelineStep.PROVISIONING
    attempt: int = 1
    success: bool | None = None
    failure_class: FailureClass | None = None
    restart_required: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    restarted_from: str | None = None
    superseded_by: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    deadline_at: datetime | None = None

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_run_id(self.run_id)
            domain_ids.validate_lane_name(self.lane)
        except ValueError as exc:
            _fail("Run", str(exc))
        _as_str(self.workspace_path, "Run.workspace_path", max_len=4096)
        object.__setattr__(self, "request", _as_json_object(self.request, "Run.request"))
        object.__setattr__(self, "status", _as_enum(RunStatus, self.status, "Run.status"))
        object.__setattr__(
            self,
            "current_step",
            _as_enum(PipelineStep, self.current_step, "Run.current_step"),
        )
        _as_int(self.attempt, "Run.attempt", minimum=1)
        if self.failure_class is not None:
            object.__setattr__(
                self,
                "failure_class",
                _as_enum(FailureClass, self.failure_class, "Run.failure_class"),
            )
        object.__setattr__(self, "metadata", _as_str_dict(self.metadata, "Run.metadata"))
        object.__setattr__(self, "created_at", _as_datetime(self.created_at, "Run.created_at"))
        object.__setattr__(self, "updated_at", _as_datetime(self.updated_at, "Run.updated_at"))
        if self.finished_at is not None:
            object.__setattr__(
                self, "finished_at", _as_datetime(self.finished_at, "Run.finished_at")
            )
        if self.deadline_at is not None:
            object.__setattr__(
                self, "deadline_at", _as_datetime(self.deadline_at, "Run.deadline_at")
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def outcome(self) -> RunOutcome | None:
        if not self.is_terminal:
            return None
        if self.status is RunStatus.COMPLETED and self.success:
            return RunOutcome.SUCCESS
        if self.status is RunStatus.FAILED and self.restart_required:
            return RunOutcome.RESTART_REQUIRED
        return RunOutcome.FAILED

    def scan_request(self) -> ScanRequest:
        return ScanRequest.from_dict(self.request)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Run:
        parsed = _expect_object(
            data,
            "Run",
            required={"run_id", "lane", "workspace_path", "request"},
            optional={item.name for item in fields(cls)},
        )
        failure_raw = parsed.get("failure_class")
        return cls(
            run_id=_as_str(parsed["run_id"], "Run.run_id"),
            lane=_as_str(parsed["lane"], "Run.lane"),
            workspace_path=_as_str(parsed["workspace_path"], "Run.workspace_path", max_len=4096),
            request=_as_json_object(parsed["request"], "Run.request"),
            status=_as_enum(RunStatus, parsed.get("status", "pending"), "Run.status"),
            current_step=_as_enum(
                PipelineStep, parsed.get("current_step", "provisioning"), "Run.current_step"
            ),
            attempt=_as_int(parsed.get("attempt", 1), "Run.attempt", minimum=1),
            success=(
                None
                if parsed.get("success") is None
                else _as_bool(parsed["success"], "Run.success")
            ),
            failure_class=(
                None
                if failure_raw is None
                else _as_enum(FailureClass, failure_raw, "Run.failure_class")
            ),
            restart_required=_as_bool(
                parsed.get("restart_required", False), "Run.restart_required"
            ),
            metadata=_as_str_dict(parsed.get("metadata", {}), "Run.metadata"),
            restarted_from=_as_optional_str(parsed.get("restarted_from"), "Run.restarted_from"),
            superseded_by=_as_optional_str(parsed.get("superseded_by"), "Run.superseded_by"),
            created_at=_as_datetime(parsed.get("created_at", _utc_now()), "Run.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", _utc_now()), "Run.updated_at"),
            finished_at=(
                None
                if parsed.get("finished_at") is None
                else _as_datetime(parsed["finished_at"], "Run.finished_at")
            ),
            deadline_at=(
                None
                if parsed.get("deadline_at") is None
                else _as_datetime(parsed["deadline_at"], "Run.deadline_at")
            ),
        )


@dataclass(frozen=True, slots=True)
class ProvisionResult(CanonicalModel):
    repo_path: str
    origin: str
    reused: bool
    ref: str | None = None
    size_bytes: int = 0
    sparse_applied: bool = False
    compacted: bool = False
    notes: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ProvisionResult:
        parsed = _expect_object(
            data,
            "ProvisionResult",
            required={"repo_path", "origin", "reused"},
            optional={"ref", "size_bytes", "sparse_applied", "compacted", "notes"},
        )
        return cls(
            repo_path=_as_str(parsed["repo_path"], "ProvisionResult.repo_path", max_len=4096),
            origin=_as_str(parsed["origin"], "ProvisionResult.origin", max_len=2048),
            reused=_as_bool(parsed["reused"], "ProvisionResult.reused"),
            ref=_as_optional_str(parsed.get("ref"), "ProvisionResult.ref"),
            size_bytes=_as_int(
                parsed.get("size_bytes", 0), "ProvisionResult.size_bytes", minimum=0
            ),
            sparse_applied=_as_bool(
                parsed.get("sparse_applied", False), "ProvisionResult.sparse_applied"
            ),
            compacted=_as_bool(parsed.get("compacted", False), "ProvisionResult.compacted"),
            notes=_as_str_tuple(parsed.get("notes", ()), "ProvisionResult.notes"),
        )


@dataclass(frozen=True, slots=True)
class ScanResult(CanonicalModel):
    """Outcome of one scanning tool invocation."""

    tool_kind: str
    success: bool
    exit_code: int | None = None
    output: str = ""
    error_message: str | None = None
    reports: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    execution_time_ms: int = 0

    def __post_init__(self) -> None:
        _as_bool(self.success, "ScanResult.success")
        if len(self.output) > _MAX_OUTPUT_TEXT:
            object.__setattr__(self, "output", self.output[-_MAX_OUTPUT_TEXT:])
        object.__setattr__(self, "reports", _as_str_dict(self.reports, "ScanResult.reports"))
        object.__setattr__(self, "metadata", _as_str_dict(self.metadata, "ScanResult.metadata"))
        _as_int(self.execution_time_ms, "ScanResult.execution_time_ms", minimum=0)

    @classmethod
    def failure(cls, tool_kind: str, message: str, **metadata: str) -> ScanResult:
        return cls(
            tool_kind=tool_kind,
            success=False,
            error_message=message,
            metadata=dict(metadata),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ScanResult:
        parsed = _expect_object(
            data,
            "ScanResult",
            required={"tool_kind", "success"},
            optional={item.name for item in fields(cls)},
        )
        exit_code = parsed.get("exit_code")
        return cls(
            tool_kind=_as_str(parsed["tool_kind"], "ScanResult.tool_kind"),
            success=_as_bool(parsed["success"], "ScanResult.success"),
            exit_code=None if exit_code is None else _as_int(exit_code, "ScanResult.exit_code"),
            output=_as_text(parsed.get("output", ""), "ScanResult.output"),
            error_message=_as_optional_str(parsed.get("error_message"), "ScanResult.error_message"),
            reports=_as_str_dict(parsed.get("reports", {}), "ScanResult.reports"),
            metadata=_as_str_dict(parsed.get("metadata", {}), "ScanResult.metadata"),
            execution_time_ms=_as_int(
                parsed.get("execution_time_ms", 0), "ScanResult.execution_time_ms", minimum=0
            ),
        )


@dataclass(frozen=True, slots=True)
class ScanSummary(CanonicalModel):
    """Structured summary handed to the result store."""

    run_id: str
    repository_url: str
    success: bool
    results: tuple[ScanResult, ...]
    commit_sha: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    total_execution_time_ms: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ScanSummary:
        parsed = _expect_object(
            data,
            "ScanSummary",
            required={"run_id", "repository_url", "success", "results"},
            optional={"commit_sha", "metadata", "total_execution_time_ms", "created_at"},
        )
        results_raw = parsed["results"]
        if not isinstance(results_raw, (list, tuple)):
            _fail("ScanSummary.results", "expected array")
        return cls(
            run_id=_as_str(parsed["run_id"], "ScanSummary.run_id"),
            repository_url=_as_str(parsed["repository_url"], "ScanSummary.repository_url"),
            success=_as_bool(parsed["success"], "ScanSummary.success"),
            results=tuple(
                ScanResult.from_dict(
                    _expect_object(item, "ScanSummary.results[]", required=set(), allow_any=True)
                )
                for item in results_raw
            ),
            commit_sha=_as_optional_str(parsed.get("commit_sha"), "ScanSummary.commit_sha"),
            metadata=_as_str_dict(parsed.get("metadata", {}), "ScanSummary.metadata"),
            total_execution_time_ms=_as_int(
                parsed.get("total_execution_time_ms", 0),
                "ScanSummary.total_execution_time_ms",
                minimum=0,
            ),
            created_at=_as_datetime(parsed.get("created_at", _utc_now()), "ScanSummary.created_at"),
        )


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
    allow_any: bool = False,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    if not allow_any:
        allowed = required | (optional or set())
        unknown = sorted(key for key in parsed if key not in allowed)
        if unknown:
            _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_text(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    return value


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return _as_int(value, "optional integer", minimum=1)


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    if len(value) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(value))


def _as_str_dict(value: object, path: str, *, max_entries: int = 256) -> dict[str, str]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    if len(value) > max_entries:
        _fail(path, f"contains too many entries (>{max_entries})")

    parsed: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key.strip():
            _fail(path, "keys must be non-empty strings")
        if not isinstance(item, str):
            _fail(f"{path}.{key}", f"expected string, got {type(item).__name__}")
        parsed[key.strip()] = item
    return parsed


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value) and not isinstance(value, type):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "ACTIVE_RUN_STATUSES",
    "CanonicalModel",
    "CloneStrategy",
    "FailureClass",
    "JSONScalar",
    "JSONValue",
    "PipelineStep",
    "ProvisionResult",
    "Run",
    "RunOutcome",
    "RunStatus",
    "ScanConfig",
    "ScanPriority",
    "ScanRequest",
    "ScanResult",
    "ScanSummary",
    "TERMINAL_RUN_STATUSES",
    "canonical_json",
]
