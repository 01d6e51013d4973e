"""Retry, timeout and recovery policies derived from the effective config."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, cast

from scan_orchestrator.config.schema import assert_valid_config, default_config, merge_config
from scan_orchestrator.domain.models import FailureClass, ScanRequest

RetryablePredicate = Callable[[BaseException], bool]
RetryCallback = Callable[[int, BaseException, float], None]

_DEFAULT_RESTARTABLE: Final[frozenset[FailureClass]] = frozenset(
    {FailureClass.STORAGE, FailureClass.NETWORK, FailureClass.RESOURCE}
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff: ``delay_for(n) = min(cap, initial * coefficient ** (n - 1))``."""

    initial_interval_seconds: float = 5.0
    backoff_coefficient: float = 2.0
    maximum_interval_seconds: float = 60.0
    maximum_attempts: int = 3

    def __post_init__(self) -> None:
        if self.initial_interval_seconds < 0:
            raise ValueError("initial_interval_seconds must be >= 0")
        if self.backoff_coefficient < 1.0:
            raise ValueError("backoff_coefficient must be >= 1.0")
        if self.maximum_interval_seconds < self.initial_interval_seconds:
            raise ValueError("maximum_interval_seconds must be >= initial_interval_seconds")
        if isinstance(self.maximum_attempts, bool) or self.maximum_attempts < 1:
            raise ValueError("maximum_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(initial_interval_seconds=0.0, maximum_interval_seconds=0.0, maximum_attempts=1)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> RetryPolicy:
        return cls(
            initial_interval_seconds=_as_float(payload.get("initial_interval_seconds"), 5.0),
            backoff_coefficient=_as_float(payload.get("backoff_coefficient"), 2.0),
            maximum_interval_seconds=_as_float(payload.get("maximum_interval_seconds"), 60.0),
            maximum_attempts=_as_int(payload.get("maximum_attempts"), 3),
        )

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based: the wait after the first failure)."""

        if retry_number < 1:
            raise ValueError("retry_number must be >= 1")
        # Bound the exponent; past the cap the value no longer changes.
        exponent = min(retry_number - 1, 512)
        try:
            raw = self.initial_interval_seconds * (self.backoff_coefficient**exponent)
        except OverflowError:
            return self.maximum_interval_seconds
        return min(self.maximum_interval_seconds, raw)

    def delays(self) -> tuple[float, ...]:
        """Every wait the policy allows between its attempts."""

        return tuple(self.delay_for(n) for n in range(1, self.maximum_attempts))

    def total_delay_seconds(self) -> float:
        return sum(self.delays())


def _never_retry(exc: BaseException) -> bool:
    return False


@dataclass(frozen=True, slots=True)
class StepOptions:
    """How the substrate runs one step: timeouts, retries and callbacks."""

    start_to_close_seconds: float | None = None
    heartbeat_timeout_seconds: float | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy.no_retry)
    retryable: RetryablePredicate = _never_retry
    on_retry: RetryCallback | None = None
    cancellation_grace_seconds: float = 30.0

    def __post_init__(self) -> None:
        for name in ("start_to_close_seconds", "heartbeat_timeout_seconds"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be > 0 when set")
        if self.cancellation_grace_seconds < 0:
            raise ValueError("cancellation_grace_seconds must be >= 0")

    @property
    def supervised(self) -> bool:
        return self.start_to_close_seconds is not None or self.heartbeat_timeout_seconds is not None


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Flattened view of the config sections the pipeline controller consumes."""

    workspace_root: Path
    results_root: Path
    step_retry: RetryPolicy = field(default_factory=RetryPolicy)
    space_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(60.0, 1.5, 600.0, 10)
    )
    admission_seconds: float = 60.0
    clone_seconds: float = 600.0
    clone_heartbeat_seconds: float = 30.0
    scan_seconds: float = 1800.0
    scan_heartbeat_seconds: float = 60.0
    persist_seconds: float = 120.0
    reclaim_seconds: float = 300.0
    run_seconds: float = 4 * 60 * 60.0
    cancellation_grace_seconds: float = 30.0
    restartable_classes: frozenset[FailureClass] = _DEFAULT_RESTARTABLE
    lease_seconds: float = 120.0

    @classmethod
    def from_config(cls, config: Mapping[str, object] | None = None) -> PipelineSettings:
        effective = effective_config(config)
        paths = _section(effective, "paths")
        retry = _section(effective, "retry")
        timeouts = _section(effective, "timeouts")
        restart = _section(effective, "restart")
        worker = _section(effective, "worker")
        restartable_raw = restart.get("restartable_classes", [])
        restartable = frozenset(
            FailureClass(item)
            for item in cast("Sequence[str]", restartable_raw)
            if isinstance(item, str)
        )
        return cls(
            workspace_root=Path(str(paths.get("workspace_root", "workspaces"))),
            results_root=Path(str(paths.get("results_root", "results"))),
            step_retry=RetryPolicy.from_mapping(_section(retry, "step")),
            space_retry=RetryPolicy.from_mapping(_section(retry, "insufficient_space")),
            admission_seconds=_as_float(timeouts.get("admission_seconds"), 60.0),
            clone_seconds=_as_float(timeouts.get("clone_seconds"), 600.0),
            clone_heartbeat_seconds=_as_float(timeouts.get("clone_heartbeat_seconds"), 30.0),
            scan_seconds=_as_float(timeouts.get("scan_seconds"), 1800.0),
            scan_heartbeat_seconds=_as_float(timeouts.get("scan_heartbeat_seconds"), 60.0),
            persist_seconds=_as_float(timeouts.get("persist_seconds"), 120.0),
            reclaim_seconds=_as_float(timeouts.get("reclaim_seconds"), 300.0),
            run_seconds=_as_float(timeouts.get("run_seconds"), 4 * 60 * 60.0),
            cancellation_grace_seconds=_as_float(
                timeouts.get("cancellation_grace_seconds"), 30.0
            ),
            restartable_classes=restartable,
            lease_seconds=_as_float(worker.get("lease_seconds"), 120.0),
        )

    def run_timeout_for(self, request: ScanRequest) -> float:
        declared = request.config.run_timeout_seconds
        return float(declared) if declared is not None else self.run_seconds

    def scan_timeout_for(self, request: ScanRequest) -> float:
        declared = request.config.scan_timeout_seconds
        return float(declared) if declared is not None else self.scan_seconds

    def is_restartable(self, failure_class: FailureClass) -> bool:
        if failure_class is FailureClass.DEPLOYMENT:
            return False
        if failure_class is FailureClass.STORAGE:
            return True
        return failure_class in self.restartable_classes


def effective_config(config: Mapping[str, object] | None) -> dict[str, object]:
    merged = merge_config(default_config(), config or {})
    return cast("dict[str, object]", assert_valid_config(merged))


def _section(payload: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = payload.get(key)
    if isinstance(value, Mapping):
        return cast("Mapping[str, object]", value)
    return {}


def _as_float(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _as_int(value: object, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


__all__ = [
    "PipelineSettings",
    "RetryCallback",
    "RetryPolicy",
    "RetryablePredicate",
    "StepOptions",
    "effective_config",
]
