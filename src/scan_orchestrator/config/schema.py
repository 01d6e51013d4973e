"""
scan-orchestrator — configuration schema and validation.

File: src/scan_orchestrator/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support the built-in ``development`` and ``production`` profile overlays.
- Reject embedded secrets; only ``*_env`` indirections are allowed.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from scan_orchestrator import constants
from scan_orchestrator.domain.models import FailureClass

ConfigSchemaVersion: Final[int] = constants.CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("development", "production")
FAILURE_TYPE_ALL: Final[str] = "all"

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
_TOOL_KIND_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_TEMPLATE_FIELDS: Final[frozenset[str]] = frozenset({"worktree", "output_dir", "run_id"})
_TEMPLATE_FIELD_RE = re.compile(r"\{([^{}]*)\}")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("paths", "state_db"),
    ("paths", "results_root"),
    ("observability", "log_dir"),
)

_SECTIONS: Final[tuple[str, ...]] = (
    "meta",
    "paths",
    "admission",
    "retry",
    "timeouts",
    "lanes",
    "restart",
    "worker",
    "tools",
    "observability",
)


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    workspace_root: str
    state_db: str
    results_root: str


class AdmissionConfig(TypedDict):
    base_repository_bytes: int
    full_history_overhead_bytes: int
    single_branch_overhead_bytes: int
    shallow_overhead_bytes: int
    sparse_checkout_fraction: float
    tool_footprint_bytes: int
    output_budget_bytes: int
    temp_budget_bytes: int
    max_workspace_bytes: int
    min_free_fraction: float


class RetryPolicyConfig(TypedDict):
    initial_interval_seconds: float
    backoff_coefficient: float
    maximum_interval_seconds: float
    maximum_attempts: int


class RetryConfig(TypedDict):
    step: RetryPolicyConfig
    insufficient_space: RetryPolicyConfig


class TimeoutsConfig(TypedDict):
    admission_seconds: float
    clone_seconds: float
    clone_heartbeat_seconds: float
    scan_seconds: float
    scan_heartbeat_seconds: float
    persist_seconds: float
    reclaim_seconds: float
    run_seconds: float
    cancellation_grace_seconds: float


class LanesConfig(TypedDict):
    default_lane: str
    priority_lane: str
    long_running_lane: str
    long_running_scan_threshold_seconds: int
    long_running_run_threshold_seconds: int
    queue_prefix: str
    concurrency: dict[str, int]


class RestartConfig(TypedDict):
    interval_seconds: float
    failure_type: str
    verify_storage: bool
    use_new_run_id: bool
    restartable_classes: list[str]
    batch_limit: int


class WorkerConfig(TypedDict):
    poll_interval_seconds: float
    lease_seconds: float
    lanes: list[str]


class ToolConfig(TypedDict):
    enabled: bool
    command: list[str]
    success_exit_codes: list[int]
    reports: dict[str, str]
    env: dict[str, str]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    redact_secrets: bool
    log_to_stdout: bool


class ProfileOverlay(TypedDict, total=False):
    paths: dict[str, object]
    admission: dict[str, object]
    retry: dict[str, object]
    timeouts: dict[str, object]
    lanes: dict[str, object]
    restart: dict[str, object]
    worker: dict[str, object]
    tools: dict[str, object]
    observability: dict[str, object]


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    admission: AdmissionConfig
    retry: RetryConfig
    timeouts: TimeoutsConfig
    lanes: LanesConfig
    restart: RestartConfig
    worker: WorkerConfig
    tools: dict[str, ToolConfig]
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "paths": {
        "workspace_root": f"{constants.WORKSPACES_DIR}/",
        "state_db": f"{constants.STATE_DIR}/scanorch.sqlite",
        "results_root": f"{constants.RESULTS_DIR}/",
    },
    "admission": {
        "base_repository_bytes": constants.DEFAULT_BASE_REPOSITORY_BYTES,
        "full_history_overhead_bytes": constants.DEFAULT_FULL_HISTORY_OVERHEAD_BYTES,
        "single_branch_overhead_bytes": constants.DEFAULT_SINGLE_BRANCH_OVERHEAD_BYTES,
        "shallow_overhead_bytes": constants.DEFAULT_SHALLOW_OVERHEAD_BYTES,
        "sparse_checkout_fraction": constants.DEFAULT_SPARSE_CHECKOUT_FRACTION,
        "tool_footprint_bytes": constants.DEFAULT_TOOL_FOOTPRINT_BYTES,
        "output_budget_bytes": constants.DEFAULT_OUTPUT_BUDGET_BYTES,
        "temp_budget_bytes": constants.DEFAULT_TEMP_BUDGET_BYTES,
        "max_workspace_bytes": constants.DEFAULT_MAX_WORKSPACE_BYTES,
        "min_free_fraction": constants.DEFAULT_MIN_FREE_FRACTION,
    },
    "retry": {
        "step": {
            "initial_interval_seconds": 5.0,
            "backoff_coefficient": 2.0,
            "maximum_interval_seconds": 60.0,
            "maximum_attempts": 3,
        },
        "insufficient_space": {
            "initial_interval_seconds": 60.0,
            "backoff_coefficient": 1.5,
            "maximum_interval_seconds": 600.0,
            "maximum_attempts": 10,
        },
    },
    "timeouts": {
        "admission_seconds": float(constants.DEFAULT_ADMISSION_TIMEOUT_SECONDS),
        "clone_seconds": float(constants.DEFAULT_CLONE_TIMEOUT_SECONDS),
        "clone_heartbeat_seconds": float(constants.DEFAULT_CLONE_HEARTBEAT_SECONDS),
        "scan_seconds": float(constants.DEFAULT_SCAN_TIMEOUT_SECONDS),
        "scan_heartbeat_seconds": float(constants.DEFAULT_SCAN_HEARTBEAT_SECONDS),
        "persist_seconds": float(constants.DEFAULT_PERSIST_TIMEOUT_SECONDS),
        "reclaim_seconds": float(constants.DEFAULT_RECLAIM_TIMEOUT_SECONDS),
        "run_seconds": float(constants.DEFAULT_RUN_TIMEOUT_SECONDS),
        "cancellation_grace_seconds": float(constants.DEFAULT_CANCELLATION_GRACE_SECONDS),
    },
    "lanes": {
        "default_lane": constants.DEFAULT_LANE,
        "priority_lane": constants.PRIORITY_LANE,
        "long_running_lane": constants.LONG_RUNNING_LANE,
        "long_running_scan_threshold_seconds": constants.LONG_RUNNING_SCAN_THRESHOLD_SECONDS,
        "long_running_run_threshold_seconds": constants.LONG_RUNNING_RUN_THRESHOLD_SECONDS,
        "queue_prefix": constants.DEFAULT_QUEUE_PREFIX,
        "concurrency": {
            constants.DEFAULT_LANE: 4,
            constants.PRIORITY_LANE: 2,
            constants.LONG_RUNNING_LANE: 1,
        },
    },
    "restart": {
        "interval_seconds": float(constants.DEFAULT_RESTART_INTERVAL_SECONDS),
        "failure_type": FailureClass.STORAGE.value,
        "verify_storage": True,
        "use_new_run_id": True,
        "restartable_classes": [
            FailureClass.STORAGE.value,
            FailureClass.NETWORK.value,
            FailureClass.RESOURCE.value,
        ],
        "batch_limit": 100,
    },
    "worker": {
        "poll_interval_seconds": 5.0,
        "lease_seconds": 120.0,
        "lanes": [constants.DEFAULT_LANE, constants.PRIORITY_LANE, constants.LONG_RUNNING_LANE],
    },
    "tools": {
        "gitleaks": {
            "enabled": True,
            "command": [
                "gitleaks",
                "detect",
                "--source",
                "{worktree}",
                "--report-format",
                "json",
                "--report-path",
                "{output_dir}/gitleaks-report.json",
                "--no-banner",
            ],
            "success_exit_codes": [0, 1],
            "reports": {"json": "gitleaks-report.json"},
            "env": {},
        },
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": "logs/",
        "redact_secrets": True,
        "log_to_stdout": False,
    },
    "profiles": {
        "development": {
            "observability": {"log_level": "DEBUG", "log_format": "text", "log_to_stdout": True},
            "retry": {
                "insufficient_space": {
                    "initial_interval_seconds": 5.0,
                    "maximum_interval_seconds": 30.0,
                },
            },
            "restart": {"interval_seconds": 60.0},
            "worker": {"poll_interval_seconds": 1.0},
        },
        "production": {
            "observability": {"log_level": "INFO", "log_format": "json"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


# (kind, minimum) for flat numeric/boolean sections.
_FieldSpec = tuple[Literal["int", "float", "bool", "fraction"], float | None]

_ADMISSION_FIELDS: Final[dict[str, _FieldSpec]] = {
    "base_repository_bytes": ("int", 0),
    "full_history_overhead_bytes": ("int", 0),
    "single_branch_overhead_bytes": ("int", 0),
    "shallow_overhead_bytes": ("int", 0),
    "sparse_checkout_fraction": ("fraction", None),
    "tool_footprint_bytes": ("int", 0),
    "output_budget_bytes": ("int", 0),
    "temp_budget_bytes": ("int", 0),
    "max_workspace_bytes": ("int", 1),
    "min_free_fraction": ("fraction", None),
}

_RETRY_FIELDS: Final[dict[str, _FieldSpec]] = {
    "initial_interval_seconds": ("float", 0.0),
    "backoff_coefficient": ("float", 1.0),
    "maximum_interval_seconds": ("float", 0.0),
    "maximum_attempts": ("int", 1),
}

_TIMEOUT_FIELDS: Final[dict[str, _FieldSpec]] = {
    "admission_seconds": ("float", 0.001),
    "clone_seconds": ("float", 0.001),
    "clone_heartbeat_seconds": ("float", 0.001),
    "scan_seconds": ("float", 0.001),
    "scan_heartbeat_seconds": ("float", 0.001),
    "persist_seconds": ("float", 0.001),
    "reclaim_seconds": ("float", 0.001),
    "run_seconds": ("float", 0.001),
    "cancellation_grace_seconds": ("float", 0.0),
}


def default_config() -> OrchestratorConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade scanorch.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the scan-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    if profile is None or not profile.strip():
        return materialized
    selected = profile.strip()

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )
    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    merged = merge_config(materialized, overlay_raw)
    return assert_valid_config(merged, active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, "", issues, partial=False)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a deterministic redacted representation for logs and ``config`` output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def insufficient_space_window_seconds(retry_policy: Mapping[str, object]) -> float:
    """Total backoff sleep across every retry of a policy."""

    initial = float(retry_policy["initial_interval_seconds"])  # type: ignore[arg-type]
    coefficient = float(retry_policy["backoff_coefficient"])  # type: ignore[arg-type]
    maximum = float(retry_policy["maximum_interval_seconds"])  # type: ignore[arg-type]
    attempts = int(retry_policy["maximum_attempts"])  # type: ignore[call-overload]
    return sum(
        min(maximum, initial * coefficient ** (retry - 1)) for retry in range(1, attempts)
    )


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {*_SECTIONS, "profiles"}, path, issues)
    if not partial:
        _require_keys(payload, set(_SECTIONS), path, issues)

    validators: dict[str, Callable[[dict[str, object], str], dict[str, Any]]] = {
        "meta": lambda s, p: _validate_meta(s, p, issues, partial=partial),
        "paths": lambda s, p: _validate_paths(s, p, issues, partial=partial),
        "admission": lambda s, p: _validate_fields(
            s, p, issues, _ADMISSION_FIELDS, partial=partial
        ),
        "retry": lambda s, p: _validate_retry(s, p, issues, partial=partial),
        "timeouts": lambda s, p: _validate_fields(
            s, p, issues, _TIMEOUT_FIELDS, partial=partial
        ),
        "lanes": lambda s, p: _validate_lanes(s, p, issues, partial=partial),
        "restart": lambda s, p: _validate_restart(s, p, issues, partial=partial),
        "worker": lambda s, p: _validate_worker(s, p, issues, partial=partial),
        "tools": lambda s, p: _validate_tools(s, p, issues, partial=partial),
        "observability": lambda s, p: _validate_observability(s, p, issues, partial=partial),
    }

    out: dict[str, Any] = {}
    for key in _SECTIONS:
        raw = payload.get(key)
        if raw is None:
            continue
        section_path = _join(path, key)
        section_obj = _as_object(raw, section_path, issues)
        if section_obj is None:
            continue
        out[key] = validators[key](section_obj, section_path)

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None and not partial:
        profiles_path = _join(path, "profiles")
        profiles_obj = _as_object(profiles_raw, profiles_path, issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, profiles_path, issues)

    if not partial:
        _validate_cross_fields(out, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_paths(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"workspace_root", "state_db", "results_root"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_fields(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    fields: Mapping[str, _FieldSpec],
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(fields), path, issues)
    if not partial:
        _require_keys(payload, set(fields), path, issues)

    out: dict[str, Any] = {}
    for key in sorted(fields):
        if key not in payload:
            continue
        kind, minimum = fields[key]
        field_path = _join(path, key)
        parsed: object | None
        if kind == "int":
            parsed = _as_int(
                payload[key], field_path, issues, minimum=None if minimum is None else int(minimum)
            )
        elif kind == "float":
            parsed = _as_float(payload[key], field_path, issues, minimum=minimum)
        elif kind == "fraction":
            parsed = _as_float(payload[key], field_path, issues, minimum=0.0)
            if parsed is not None and parsed > 1.0:
                issues.add(field_path, "must be <= 1.0")
                parsed = None
        else:
            parsed = _as_bool(payload[key], field_path, issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_retry(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"step", "insufficient_space"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        raw = payload.get(key)
        if raw is None:
            continue
        policy_path = _join(path, key)
        policy = _as_object(raw, policy_path, issues)
        if policy is None:
            continue
        parsed = _validate_fields(policy, policy_path, issues, _RETRY_FIELDS, partial=partial)
        initial = parsed.get("initial_interval_seconds")
        maximum = parsed.get("maximum_interval_seconds")
        if initial is not None and maximum is not None and maximum < initial:
            issues.add(
                _join(policy_path, "maximum_interval_seconds"),
                "must be >= initial_interval_seconds",
            )
        out[key] = parsed
    return out


def _validate_lanes(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    names = {"default_lane", "priority_lane", "long_running_lane"}
    thresholds = {"long_running_scan_threshold_seconds", "long_running_run_threshold_seconds"}
    allowed = names | thresholds | {"queue_prefix", "concurrency"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(names):
        if key in payload:
            parsed = _as_name(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    for key in sorted(thresholds):
        if key in payload:
            parsed_int = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed_int is not None:
                out[key] = parsed_int
    if "queue_prefix" in payload:
        parsed_prefix = _as_name(payload["queue_prefix"], _join(path, "queue_prefix"), issues)
        if parsed_prefix is not None:
            out["queue_prefix"] = parsed_prefix
    if "concurrency" in payload:
        concurrency_path = _join(path, "concurrency")
        concurrency = _as_object(payload["concurrency"], concurrency_path, issues)
        if concurrency is not None:
            parsed_concurrency: dict[str, int] = {}
            for lane in sorted(concurrency):
                lane_path = _join(concurrency_path, lane)
                if _as_name(lane, lane_path, issues) is None:
                    continue
                ceiling = _as_int(concurrency[lane], lane_path, issues, minimum=1)
                if ceiling is not None:
                    parsed_concurrency[lane] = ceiling
            out["concurrency"] = parsed_concurrency
    return out


def _validate_restart(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {
        "interval_seconds",
        "failure_type",
        "verify_storage",
        "use_new_run_id",
        "restartable_classes",
        "batch_limit",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    classes = tuple(item.value for item in FailureClass)
    out: dict[str, Any] = {}
    if "interval_seconds" in payload:
        parsed_interval = _as_float(
            payload["interval_seconds"], _join(path, "interval_seconds"), issues, minimum=0.001
        )
        if parsed_interval is not None:
            out["interval_seconds"] = parsed_interval
    if "failure_type" in payload:
        parsed_type = _as_enum(
            payload["failure_type"],
            _join(path, "failure_type"),
            issues,
            allowed_values=(*classes, FAILURE_TYPE_ALL),
        )
        if parsed_type is not None:
            out["failure_type"] = parsed_type
    for key in ("verify_storage", "use_new_run_id"):
        if key in payload:
            parsed_bool = _as_bool(payload[key], _join(path, key), issues)
            if parsed_bool is not None:
                out[key] = parsed_bool
    if "restartable_classes" in payload:
        parsed_classes = _as_str_list(
            payload["restartable_classes"], _join(path, "restartable_classes"), issues
        )
        if parsed_classes is not None:
            unknown = sorted(set(parsed_classes) - set(classes))
            if unknown:
                issues.add(
                    _join(path, "restartable_classes"),
                    f"unknown failure classes: {unknown}",
                )
            elif FailureClass.DEPLOYMENT.value in parsed_classes:
                issues.add(
                    _join(path, "restartable_classes"),
                    "deployment failures never terminate a run and cannot be restartable",
                )
            else:
                out["restartable_classes"] = parsed_classes
    if "batch_limit" in payload:
        parsed_limit = _as_int(
            payload["batch_limit"], _join(path, "batch_limit"), issues, minimum=1
        )
        if parsed_limit is not None:
            if parsed_limit > 1000:
                issues.add(_join(path, "batch_limit"), "must be <= 1000")
            else:
                out["batch_limit"] = parsed_limit
    return out


def _validate_worker(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"poll_interval_seconds", "lease_seconds", "lanes"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("poll_interval_seconds", "lease_seconds"):
        if key in payload:
            parsed = _as_float(payload[key], _join(path, key), issues, minimum=0.001)
            if parsed is not None:
                out[key] = parsed
    if "lanes" in payload:
        lanes_path = _join(path, "lanes")
        parsed_lanes = _as_str_list(payload["lanes"], lanes_path, issues)
        if parsed_lanes is not None:
            if not parsed_lanes:
                issues.add(lanes_path, "must name at least one lane")
            elif all(_as_name(lane, lanes_path, issues) is not None for lane in parsed_lanes):
                out["lanes"] = parsed_lanes
    return out


def _validate_tools(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for kind in sorted(payload):
        tool_path = _join(path, kind)
        if not _TOOL_KIND_PATTERN.fullmatch(kind):
            issues.add(tool_path, "tool kind must match [A-Za-z0-9][A-Za-z0-9._-]*")
            continue
        tool = _as_object(payload[kind], tool_path, issues)
        if tool is None:
            continue
        out[kind] = _validate_tool(tool, tool_path, issues, partial=partial)
    return out


def _validate_tool(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"enabled", "command", "success_exit_codes", "reports", "env"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, {"command"}, path, issues)

    out: dict[str, Any] = {}
    if "enabled" in payload:
        parsed_enabled = _as_bool(payload["enabled"], _join(path, "enabled"), issues)
        if parsed_enabled is not None:
            out["enabled"] = parsed_enabled
    elif not partial:
        out["enabled"] = True

    if "command" in payload:
        command_path = _join(path, "command")
        command = _as_str_list(payload["command"], command_path, issues)
        if command is not None:
            if not command:
                issues.add(command_path, "must not be empty")
            else:
                for index, token in enumerate(command):
                    for field_name in _TEMPLATE_FIELD_RE.findall(token):
                        if field_name not in _TEMPLATE_FIELDS:
                            issues.add(
                                f"{command_path}[{index}]",
                                f"unknown placeholder {{{field_name}}}; "
                                f"expected one of: {', '.join(sorted(_TEMPLATE_FIELDS))}",
                            )
                out["command"] = command

    if "success_exit_codes" in payload:
        codes_path = _join(path, "success_exit_codes")
        raw_codes = payload["success_exit_codes"]
        if not isinstance(raw_codes, list) or not raw_codes:
            issues.add(codes_path, "expected non-empty array of integers")
        else:
            codes = [_as_int(code, codes_path, issues, minimum=0) for code in raw_codes]
            if all(code is not None for code in codes):
                out["success_exit_codes"] = sorted({code for code in codes if code is not None})
    elif not partial:
        out["success_exit_codes"] = [0]

    for key in ("reports", "env"):
        if key in payload:
            mapping_path = _join(path, key)
            mapping = _as_object(payload[key], mapping_path, issues)
            if mapping is None:
                continue
            parsed_mapping: dict[str, str] = {}
            for entry in sorted(mapping):
                entry_path = _join(mapping_path, entry)
                if key == "env":
                    if not _ENV_NAME_PATTERN.fullmatch(entry):
                        issues.add(entry_path, "must be an env var name")
                        continue
                    if _looks_sensitive_key(entry):
                        issues.add(
                            entry_path,
                            "embedded secret values are forbidden; export it in the worker "
                            "environment instead",
                        )
                        continue
                value = _as_str(mapping[entry], entry_path, issues)
                if value is not None:
                    parsed_mapping[entry] = value
            out[key] = parsed_mapping
        elif not partial:
            out[key] = {}
    return out


def _validate_observability(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_dir", "redact_secrets", "log_to_stdout"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level
    if "log_format" in payload:
        parsed_format = _as_enum(
            payload["log_format"],
            _join(path, "log_format"),
            issues,
            allowed_values=("json", "text"),
        )
        if parsed_format is not None:
            out["log_format"] = parsed_format
    if "log_dir" in payload:
        parsed_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_dir is not None:
            out["log_dir"] = parsed_dir
    for key in ("redact_secrets", "log_to_stdout"):
        if key in payload:
            parsed_bool = _as_bool(payload[key], _join(path, key), issues)
            if parsed_bool is not None:
                out[key] = parsed_bool
    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        if "meta" in profile_obj or "profiles" in profile_obj:
            issues.add(profile_path, "profiles may not override meta or profiles")
            continue
        out[profile_name] = _validate_root(profile_obj, profile_path, issues, partial=True)
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    retry = config.get("retry")
    timeouts = config.get("timeouts")
    if isinstance(retry, Mapping) and isinstance(timeouts, Mapping):
        space_policy = retry.get("insufficient_space")
        needed_keys = ("admission_seconds", "clone_seconds", "scan_seconds", "run_seconds")
        if isinstance(space_policy, Mapping) and all(
            key in space_policy for key in _RETRY_FIELDS
        ) and all(key in timeouts for key in needed_keys):
            window = insufficient_space_window_seconds(space_policy)
            attempts = int(space_policy["maximum_attempts"])
            required = (
                window
                + attempts * float(timeouts["admission_seconds"])
                + float(timeouts["clone_seconds"])
                + float(timeouts["scan_seconds"])
            )
            if float(timeouts["run_seconds"]) < required:
                issues.add(
                    "timeouts.run_seconds",
                    f"must cover the admission backoff window plus clone and scan timeouts "
                    f"(>= {required:g}s)",
                )
        heartbeat_pairs = (
            ("clone_heartbeat_seconds", "clone_seconds"),
            ("scan_heartbeat_seconds", "scan_seconds"),
        )
        for heartbeat_key, timeout_key in heartbeat_pairs:
            heartbeat = timeouts.get(heartbeat_key)
            timeout = timeouts.get(timeout_key)
            if heartbeat is not None and timeout is not None and heartbeat > timeout:
                issues.add(f"timeouts.{heartbeat_key}", f"must be <= {timeout_key}")

    lanes = config.get("lanes")
    worker = config.get("worker")
    if isinstance(lanes, Mapping) and isinstance(worker, Mapping):
        known = {
            lanes.get("default_lane"),
            lanes.get("priority_lane"),
            lanes.get("long_running_lane"),
        }
        concurrency = lanes.get("concurrency")
        if isinstance(concurrency, Mapping):
            known |= set(concurrency)
        for lane in worker.get("lanes", ()):
            if lane not in known:
                issues.add("worker.lanes", f"lane {lane!r} is not configured under lanes")


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _NAME_PATTERN.fullmatch(parsed):
        issues.add(path, f"{parsed!r} must match [a-z0-9][a-z0-9._-]*")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is None:
            return None
        out.append(parsed)
    return out


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "FAILURE_TYPE_ALL",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "insufficient_space_window_seconds",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
