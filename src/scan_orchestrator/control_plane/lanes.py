"""Lane routing: a pure mapping from request attributes to an isolated lane."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, cast

from scan_orchestrator import constants
from scan_orchestrator.control_plane.policies import effective_config
from scan_orchestrator.domain import ids
from scan_orchestrator.domain.models import ScanPriority, ScanRequest


@dataclass(frozen=True, slots=True)
class LaneSettings:
    default_lane: str = constants.DEFAULT_LANE
    priority_lane: str = constants.PRIORITY_LANE
    long_running_lane: str = constants.LONG_RUNNING_LANE
    long_running_scan_threshold_seconds: int = constants.LONG_RUNNING_SCAN_THRESHOLD_SECONDS
    long_running_run_threshold_seconds: int = constants.LONG_RUNNING_RUN_THRESHOLD_SECONDS
    queue_prefix: str = constants.DEFAULT_QUEUE_PREFIX
    concurrency: dict[str, int] = field(
        default_factory=lambda: {
            constants.DEFAULT_LANE: 4,
            constants.PRIORITY_LANE: 2,
            constants.LONG_RUNNING_LANE: 1,
        }
    )

    def __post_init__(self) -> None:
        for name in ("default_lane", "priority_lane", "long_running_lane"):
            ids.validate_lane_name(getattr(self, name))
        for lane, ceiling in self.concurrency.items():
            ids.validate_lane_name(lane)
            if ceiling < 1:
                raise ValueError(f"concurrency for lane {lane!r} must be >= 1")

    @classmethod
    def from_config(cls, config: Mapping[str, object] | None = None) -> LaneSettings:
        section = cast("Mapping[str, Any]", effective_config(config)["lanes"])
        return cls(
            default_lane=str(section["default_lane"]),
            priority_lane=str(section["priority_lane"]),
            long_running_lane=str(section["long_running_lane"]),
            long_running_scan_threshold_seconds=int(
                section["long_running_scan_threshold_seconds"]
            ),
            long_running_run_threshold_seconds=int(section["long_running_run_threshold_seconds"]),
            queue_prefix=str(section["queue_prefix"]),
            concurrency={str(key): int(value) for key, value in section["concurrency"].items()},
        )

    @property
    def lanes(self) -> tuple[str, ...]:
        known = {self.default_lane, self.priority_lane, self.long_running_lane}
        known.update(self.concurrency)
        return tuple(sorted(known))


class LaneRouter:
    """Route a request to exactly one lane.

    Rules, first match wins: explicit override, ``priority == high``, declared
    scan or run timeout above the long-running thresholds, then the default
    lane. The result depends on the request alone, so a restart re-derives the
    same lane the original submission got.
    """

    def __init__(self, settings: LaneSettings | None = None) -> None:
        self._settings = settings if settings is not None else LaneSettings()

    @property
    def settings(self) -> LaneSettings:
        return self._settings

    def route(self, request: ScanRequest) -> str:
        settings = self._settings
        config = request.config
        if config.lane is not None:
            return config.lane
        if request.priority is ScanPriority.HIGH:
            return settings.priority_lane
        scan_timeout = config.scan_timeout_seconds
        if scan_timeout is not None and scan_timeout > settings.long_running_scan_threshold_seconds:
            return settings.long_running_lane
        run_timeout = config.run_timeout_seconds
        if run_timeout is not None and run_timeout > settings.long_running_run_threshold_seconds:
            return settings.long_running_lane
        return settings.default_lane

    def queue_for(self, lane: str) -> str:
        ids.validate_lane_name(lane)
        return f"{self._settings.queue_prefix}.{lane}"

    def concurrency_for(self, lane: str) -> int:
        return self._settings.concurrency.get(lane, 1)


__all__ = ["LaneRouter", "LaneSettings"]
