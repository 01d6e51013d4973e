"""
scan-orchestrator — deployment preflight.

File: src/scan_orchestrator/worker/deployment.py

Purpose
- Decide whether this host can run the pipeline at all, before a worker
  accepts any Run.

Functional requirements
- The workspace root and the results root exist, are directories and accept a
  write/fsync/read-back probe.
- ``git`` resolves on ``PATH``.
- Every enabled tool's executable resolves.
- ``require()`` raises ``DeploymentFailureError`` naming the first failed check;
  ``run()`` never raises so ``doctor`` can report every check.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

import structlog

from scan_orchestrator.control_plane.policies import PipelineSettings, effective_config
from scan_orchestrator.domain.errors import DeploymentFailureError
from scan_orchestrator.domain.models import JSONValue
from scan_orchestrator.execution_plane.scanner import ToolSpec, resolve_binary
from scan_orchestrator.integration_plane.storage_health import StorageHealthChecker, StorageProbe

WhichFn = Callable[[str], str | None]


@dataclass(frozen=True, slots=True)
class DeploymentCheck:
    name: str
    passed: bool
    detail: str


@dataclass(frozen=True, slots=True)
class DeploymentReport:
    checks: tuple[DeploymentCheck, ...]

    @property
    def healthy(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> tuple[DeploymentCheck, ...]:
        return tuple(check for check in self.checks if not check.passed)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "healthy": self.healthy,
            "checks": [
                {
                    "name": check.name,
                    "status": "ok" if check.passed else "fail",
                    "detail": check.detail,
                }
                for check in self.checks
            ],
        }


class DeploymentHealthCheck:
    """Host preflight for workers and the ``doctor`` command."""

    def __init__(
        self,
        *,
        workspace_root: str | Path,
        results_root: str | Path,
        tool_binaries: Mapping[str, str] | None = None,
        git_binary: str = "git",
        which: WhichFn = shutil.which,
        storage_probe: StorageHealthChecker | None = None,
        create_missing: bool = False,
        logger: Any | None = None,
    ) -> None:
        self._roots = (
            ("workspace_root", Path(workspace_root)),
            ("results_root", Path(results_root)),
        )
        self._tool_binaries = dict(tool_binaries or {})
        self._git_binary = git_binary
        self._which = which
        self._create_missing = create_missing
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._probe: StorageHealthChecker = (
            storage_probe if storage_probe is not None else StorageProbe(logger=self._logger)
        )

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object] | None,
        *,
        which: WhichFn = shutil.which,
        create_missing: bool = False,
        logger: Any | None = None,
    ) -> DeploymentHealthCheck:
        effective = effective_config(config)
        settings = PipelineSettings.from_config(effective)
        tools = effective.get("tools")
        binaries: dict[str, str] = {}
        if isinstance(tools, Mapping):
            for kind, payload in sorted(tools.items()):
                if not isinstance(payload, Mapping):
                    continue
                spec = ToolSpec.from_config(str(kind), cast("Mapping[str, object]", payload))
                if spec.enabled:
                    binaries[spec.kind] = spec.binary
        return cls(
            workspace_root=settings.workspace_root,
            results_root=settings.results_root,
            tool_binaries=binaries,
            which=which,
            create_missing=create_missing,
            logger=logger,
        )

    def run(self) -> DeploymentReport:
        checks: list[DeploymentCheck] = []
        for name, root in self._roots:
            checks.append(self._check_root(name, root))

        git_path = resolve_binary(self._git_binary, which=self._which)
        if git_path is not None:
            checks.append(DeploymentCheck("git", True, f"found at {git_path}"))
        else:
            checks.append(DeploymentCheck("git", False, f"{self._git_binary} not found on PATH"))

        for kind, binary in sorted(self._tool_binaries.items()):
            resolved = resolve_binary(binary, which=self._which)
            if resolved is not None:
                checks.append(DeploymentCheck(f"tool:{kind}", True, f"found at {resolved}"))
            else:
                checks.append(
                    DeploymentCheck(f"tool:{kind}", False, f"{binary} not found or not executable")
                )

        report = DeploymentReport(tuple(checks))
        self._logger.info(
            "deployment_checked",
            healthy=report.healthy,
            failed_checks=[check.name for check in report.failures],
        )
        return report

    def require(self) -> DeploymentReport:
        report = self.run()
        if not report.healthy:
            first = report.failures[0]
            raise DeploymentFailureError(_failure_type(first.name), first.detail)
        return report

    def _check_root(self, name: str, root: Path) -> DeploymentCheck:
        if self._create_missing and not root.exists():
            try:
                root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                return DeploymentCheck(name, False, f"cannot create {root}: {exc}")
        if not root.exists():
            return DeploymentCheck(name, False, f"{root} does not exist")
        if not root.is_dir():
            return DeploymentCheck(name, False, f"{root} is not a directory")
        health = self._probe.check(root)
        if not health.healthy:
            return DeploymentCheck(name, False, f"{root} failed write test: {health.reason}")
        return DeploymentCheck(name, True, f"{root} is writable")


def _failure_type(check_name: str) -> str:
    if check_name == "git":
        return "missing_git"
    if check_name.startswith("tool:"):
        return "missing_tool_binary"
    return f"unusable_{check_name}"


__all__ = ["DeploymentCheck", "DeploymentHealthCheck", "DeploymentReport"]
