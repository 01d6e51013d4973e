"""
scan-orchestrator — scan execution step.

File: src/scan_orchestrator/execution_plane/scanner.py

Purpose
- Run the configured scanning tool against a provisioned working tree and turn
  its exit into a ``ScanResult``.

Functional requirements
- The tool command is a template over ``{worktree}``, ``{output_dir}`` and
  ``{run_id}``; it runs with ``cwd=worktree``.
- Combined stdout/stderr is streamed and only a bounded tail is retained.
- Heartbeats go out on a fixed interval whether or not the tool prints.
- Exit codes in ``success_exit_codes`` are success, other codes a failed
  result; a signal kill (negative code or 137) raises
  ``ResourceExhaustionError``; a missing binary raises
  ``DeploymentFailureError``.
"""

from __future__ import annotations

import collections
import os
import shutil
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, Protocol, cast

import structlog

from scan_orchestrator.domain.errors import (
    DeploymentFailureError,
    ResourceExhaustionError,
    StepTimeoutError,
)
from scan_orchestrator.domain.models import ScanResult

HeartbeatFn = Callable[[], None]

OUTPUT_TAIL_BYTES: Final[int] = 64 * 1024
TOOL_OPTION_ENV_PREFIX: Final[str] = "SCANORCH_TOOL_"
_SIGKILL_EXIT: Final[int] = 137
_POLL_SECONDS: Final[float] = 0.1


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """One configured scanning tool."""

    kind: str
    command: tuple[str, ...]
    success_exit_codes: frozenset[int] = frozenset({0})
    reports: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.command:
            raise ValueError(f"tool {self.kind!r} has an empty command")
        object.__setattr__(self, "command", tuple(self.command))
        object.__setattr__(self, "success_exit_codes", frozenset(self.success_exit_codes))

    @classmethod
    def from_config(cls, kind: str, payload: Mapping[str, object]) -> ToolSpec:
        command = cast("list[str]", payload.get("command", []))
        codes = cast("list[int]", payload.get("success_exit_codes", [0]))
        reports = cast("Mapping[str, object]", payload.get("reports", {}))
        env = cast("Mapping[str, object]", payload.get("env", {}))
        return cls(
            kind=kind,
            command=tuple(str(token) for token in command),
            success_exit_codes=frozenset(int(code) for code in codes),
            reports={str(key): str(value) for key, value in reports.items()},
            env={str(key): str(value) for key, value in env.items()},
            enabled=bool(payload.get("enabled", True)),
        )

    @property
    def binary(self) -> str:
        return self.command[0]

    def render(self, *, worktree: Path, output_dir: Path, run_id: str) -> list[str]:
        values = {"worktree": str(worktree), "output_dir": str(output_dir), "run_id": run_id}
        return [token.format_map(values) for token in self.command]


@dataclass(frozen=True, slots=True)
class ScanInvocation:
    run_id: str
    worktree: Path
    output_dir: Path
    options: dict[str, str] = field(default_factory=dict)
    heartbeat: HeartbeatFn | None = None
    heartbeat_interval_seconds: float = 20.0
    timeout_seconds: float | None = None


class ScanTool(Protocol):
    kind: str

    def run(self, invocation: ScanInvocation) -> ScanResult: ...


class _OutputTail:
    """Drain a text stream on a thread, keeping only the last ``limit`` characters."""

    def __init__(self, stream: Any, limit: int = OUTPUT_TAIL_BYTES) -> None:
        self._chunks: collections.deque[str] = collections.deque()
        self._size = 0
        self._limit = limit
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._drain, args=(stream,), daemon=True)
        self._thread.start()

    def _drain(self, stream: Any) -> None:
        for line in iter(stream.readline, ""):
            with self._lock:
                self._chunks.append(line)
                self._size += len(line)
                while self._size > self._limit and len(self._chunks) > 1:
                    self._size -= len(self._chunks.popleft())
        stream.close()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def text(self) -> str:
        with self._lock:
            return "".join(self._chunks)[-self._limit :]


class CommandScanTool:
    """Run a command-line scanner described by a ``ToolSpec``."""

    def __init__(self, spec: ToolSpec, *, logger: Any | None = None) -> None:
        self.spec = spec
        self.kind = spec.kind
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def run(self, invocation: ScanInvocation) -> ScanResult:
        invocation.output_dir.mkdir(parents=True, exist_ok=True)
        argv = self.spec.render(
            worktree=invocation.worktree,
            output_dir=invocation.output_dir,
            run_id=invocation.run_id,
        )
        env = os.environ.copy()
        env.update(self.spec.env)
        for key, value in invocation.options.items():
            env[_option_env_name(key)] = value

        started = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                cwd=invocation.worktree,
                env=env,
                text=True,
                errors="replace",
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise DeploymentFailureError(
                "missing_tool_binary", f"{self.spec.binary}: {exc.strerror or exc}"
            ) from exc

        tail = _OutputTail(process.stdout)
        try:
            returncode = self._wait(process, invocation, started)
        except BaseException:
            process.kill()
            process.wait()
            raise
        finally:
            tail.join(timeout=5.0)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        output = tail.text()
        if returncode < 0 or returncode == _SIGKILL_EXIT:
            raise ResourceExhaustionError(
                "memory",
                f"{self.kind} killed by signal (exit code {returncode})",
            )

        success = returncode in self.spec.success_exit_codes
        reports = {
            report_type: str(invocation.output_dir / relative)
            for report_type, relative in sorted(self.spec.reports.items())
            if (invocation.output_dir / relative).is_file()
        }
        self._logger.info(
            "scan_tool_finished",
            run_id=invocation.run_id,
            tool_kind=self.kind,
            exit_code=returncode,
            success=success,
            execution_time_ms=elapsed_ms,
        )
        return ScanResult(
            tool_kind=self.kind,
            success=success,
            exit_code=returncode,
            output=output,
            error_message=None if success else f"{self.kind} exited with code {returncode}",
            reports=reports,
            metadata={"command": " ".join(argv[:1])},
            execution_time_ms=elapsed_ms,
        )

    def _wait(
        self,
        process: subprocess.Popen[str],
        invocation: ScanInvocation,
        started: float,
    ) -> int:
        interval = max(invocation.heartbeat_interval_seconds, _POLL_SECONDS)
        last_beat = started
        if invocation.heartbeat is not None:
            invocation.heartbeat()
        while True:
            try:
                return process.wait(timeout=_POLL_SECONDS)
            except subprocess.TimeoutExpired:
                now = time.monotonic()
                if (
                    invocation.timeout_seconds is not None
                    and now - started > invocation.timeout_seconds
                ):
                    raise StepTimeoutError(
                        "scan", f"{self.kind} exceeded {invocation.timeout_seconds:g}s"
                    ) from None
                if invocation.heartbeat is not None and now - last_beat >= interval:
                    invocation.heartbeat()
                    last_beat = now


class ScanToolRegistry:
    """Tool kind to runnable tool."""

    def __init__(self, tools: Mapping[str, ScanTool] | None = None) -> None:
        self._tools: dict[str, ScanTool] = dict(tools or {})

    @classmethod
    def from_config(cls, tools_config: Mapping[str, object]) -> ScanToolRegistry:
        registry = cls()
        for kind in sorted(tools_config):
            payload = tools_config[kind]
            if not isinstance(payload, Mapping):
                raise ValueError(f"tools.{kind} must be a table, got {type(payload).__name__}")
            spec = ToolSpec.from_config(kind, cast("Mapping[str, object]", payload))
            if spec.enabled:
                registry.register(CommandScanTool(spec))
        return registry

    def register(self, tool: ScanTool) -> None:
        self._tools[tool.kind] = tool

    def get(self, kind: str) -> ScanTool | None:
        return self._tools.get(kind)

    def kinds(self) -> tuple[str, ...]:
        return tuple(sorted(self._tools))

    def binaries(self) -> dict[str, str]:
        """Executable name per command-backed tool, for deployment preflight."""

        return {
            kind: tool.spec.binary
            for kind, tool in sorted(self._tools.items())
            if isinstance(tool, CommandScanTool)
        }

    def run(self, kind: str, invocation: ScanInvocation) -> ScanResult:
        tool = self._tools.get(kind)
        if tool is None:
            return ScanResult.failure(kind, f"unsupported tool kind: {kind}")
        return tool.run(invocation)


def resolve_binary(binary: str, *, which: Callable[[str], str | None] = shutil.which) -> str | None:
    if os.sep in binary:
        return binary if os.access(binary, os.X_OK) else None
    return which(binary)


def _option_env_name(key: str) -> str:
    normalized = "".join(ch if ch.isalnum() else "_" for ch in key).upper()
    return f"{TOOL_OPTION_ENV_PREFIX}{normalized}"


__all__ = [
    "CommandScanTool",
    "OUTPUT_TAIL_BYTES",
    "ScanInvocation",
    "ScanTool",
    "ScanToolRegistry",
    "ToolSpec",
    "resolve_binary",
]
