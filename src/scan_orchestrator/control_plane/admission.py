"""
scan-orchestrator — space-aware admission control.

File: src/scan_orchestrator/control_plane/admission.py

Purpose
- Decide whether a run may start provisioning given the free space at the
  workspace root.

Functional requirements
- ``required = source + tool footprint + output budget + temp budget``.
- Admit iff ``available >= max(required, min_free_fraction * max_workspace)``.
- A refusal raises ``InsufficientSpaceError``, which the controller retries with
  the slow insufficient-space backoff.

The source-size estimate is a heuristic keyed off the clone strategy. It only
gates admission and never bounds what a run actually consumes afterwards.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

import structlog

from scan_orchestrator import constants
from scan_orchestrator.control_plane.policies import effective_config
from scan_orchestrator.domain.errors import InsufficientSpaceError, StorageFailureError
from scan_orchestrator.domain.models import CloneStrategy, ScanConfig
from scan_orchestrator.utils.fs import DiskUsage, disk_usage

DiskUsageProbe = Callable[[Path], DiskUsage]


@dataclass(frozen=True, slots=True)
class AdmissionSettings:
    base_repository_bytes: int = constants.DEFAULT_BASE_REPOSITORY_BYTES
    full_history_overhead_bytes: int = constants.DEFAULT_FULL_HISTORY_OVERHEAD_BYTES
    single_branch_overhead_bytes: int = constants.DEFAULT_SINGLE_BRANCH_OVERHEAD_BYTES
    shallow_overhead_bytes: int = constants.DEFAULT_SHALLOW_OVERHEAD_BYTES
    sparse_checkout_fraction: float = constants.DEFAULT_SPARSE_CHECKOUT_FRACTION
    tool_footprint_bytes: int = constants.DEFAULT_TOOL_FOOTPRINT_BYTES
    output_budget_bytes: int = constants.DEFAULT_OUTPUT_BUDGET_BYTES
    temp_budget_bytes: int = constants.DEFAULT_TEMP_BUDGET_BYTES
    max_workspace_bytes: int = constants.DEFAULT_MAX_WORKSPACE_BYTES
    min_free_fraction: float = constants.DEFAULT_MIN_FREE_FRACTION

    def __post_init__(self) -> None:
        if not 0.0 < self.sparse_checkout_fraction <= 1.0:
            raise ValueError("sparse_checkout_fraction must be in (0, 1]")
        if not 0.0 <= self.min_free_fraction <= 1.0:
            raise ValueError("min_free_fraction must be in [0, 1]")

    @classmethod
    def from_config(cls, config: Mapping[str, object] | None = None) -> AdmissionSettings:
        section = cast("Mapping[str, Any]", effective_config(config)["admission"])
        return cls(
            base_repository_bytes=int(section["base_repository_bytes"]),
            full_history_overhead_bytes=int(section["full_history_overhead_bytes"]),
            single_branch_overhead_bytes=int(section["single_branch_overhead_bytes"]),
            shallow_overhead_bytes=int(section["shallow_overhead_bytes"]),
            sparse_checkout_fraction=float(section["sparse_checkout_fraction"]),
            tool_footprint_bytes=int(section["tool_footprint_bytes"]),
            output_budget_bytes=int(section["output_budget_bytes"]),
            temp_budget_bytes=int(section["temp_budget_bytes"]),
            max_workspace_bytes=int(section["max_workspace_bytes"]),
            min_free_fraction=float(section["min_free_fraction"]),
        )


@dataclass(frozen=True, slots=True)
class SpaceEstimate:
    source_bytes: int
    tool_footprint_bytes: int
    output_budget_bytes: int
    temp_budget_bytes: int

    @property
    def required_bytes(self) -> int:
        return (
            self.source_bytes
            + self.tool_footprint_bytes
            + self.output_budget_bytes
            + self.temp_budget_bytes
        )

    def breakdown(self) -> dict[str, int]:
        return {
            "source": self.source_bytes,
            "tool_footprint": self.tool_footprint_bytes,
            "output_budget": self.output_budget_bytes,
            "temp_budget": self.temp_budget_bytes,
        }


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    admitted: bool
    available_bytes: int
    required_bytes: int
    threshold_bytes: int
    measured_path: str
    estimate: SpaceEstimate

    def to_metadata(self) -> dict[str, str]:
        return {
            "admissionAvailableBytes": str(self.available_bytes),
            "admissionRequiredBytes": str(self.required_bytes),
            "admissionThresholdBytes": str(self.threshold_bytes),
            "admissionMeasuredPath": self.measured_path,
        }


class AdmissionController:
    """Estimate a run's footprint and gate it on free space at the workspace root."""

    def __init__(
        self,
        settings: AdmissionSettings | None = None,
        *,
        disk_usage_probe: DiskUsageProbe | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings if settings is not None else AdmissionSettings()
        self._probe: DiskUsageProbe = (
            disk_usage_probe if disk_usage_probe is not None else disk_usage
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> AdmissionSettings:
        return self._settings

    def estimate(self, config: ScanConfig) -> SpaceEstimate:
        settings = self._settings
        source = settings.base_repository_bytes + self._strategy_overhead(config.clone_strategy)
        if config.uses_sparse_checkout:
            source = int(math.ceil(source * settings.sparse_checkout_fraction))
        return SpaceEstimate(
            source_bytes=source,
            tool_footprint_bytes=settings.tool_footprint_bytes,
            output_budget_bytes=settings.output_budget_bytes,
            temp_budget_bytes=settings.temp_budget_bytes,
        )

    def evaluate(self, workspace_root: str | Path, config: ScanConfig) -> AdmissionDecision:
        estimate = self.estimate(config)
        root = Path(workspace_root)
        try:
            usage = self._probe(root)
        except OSError as exc:
            raise StorageFailureError(str(root), f"unable to measure free space: {exc}") from exc

        max_workspace = (
            config.max_workspace_bytes
            if config.max_workspace_bytes is not None
            else self._settings.max_workspace_bytes
        )
        floor = int(math.ceil(self._settings.min_free_fraction * max_workspace))
        threshold = max(estimate.required_bytes, floor)
        return AdmissionDecision(
            admitted=usage.free_bytes >= threshold,
            available_bytes=usage.free_bytes,
            required_bytes=estimate.required_bytes,
            threshold_bytes=threshold,
            measured_path=usage.path,
            estimate=estimate,
        )

    def admit(self, workspace_root: str | Path, config: ScanConfig) -> AdmissionDecision:
        """Return the decision when admitted; raise ``InsufficientSpaceError`` otherwise."""

        decision = self.evaluate(workspace_root, config)
        if not decision.admitted:
            self._logger.info(
                "admission_deferred",
                available_bytes=decision.available_bytes,
                threshold_bytes=decision.threshold_bytes,
                measured_path=decision.measured_path,
            )
            raise InsufficientSpaceError(
                decision.available_bytes,
                decision.threshold_bytes,
                decision.estimate.breakdown(),
            )
        return decision

    def _strategy_overhead(self, strategy: CloneStrategy) -> int:
        if strategy is CloneStrategy.FULL:
            return self._settings.full_history_overhead_bytes
        if strategy is CloneStrategy.SINGLE_BRANCH:
            return self._settings.single_branch_overhead_bytes
        return self._settings.shallow_overhead_bytes


__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionSettings",
    "DiskUsageProbe",
    "SpaceEstimate",
]
