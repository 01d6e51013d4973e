"""Git CLI wrapper used by repository provisioning."""

from __future__ import annotations

import os
import re
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from scan_orchestrator.domain.models import CloneStrategy

HeartbeatFn = Callable[[], None]

_SCHEME_URL_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<scheme>[A-Za-z][A-Za-z0-9+.-]*)://(?:[^/@]*@)?(?P<host>[^/]*)(?P<rest>.*)$"
)
_SCP_URL_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?:[^@/:]+@)?(?P<host>[^/:]+):(?P<rest>(?!//).*)$"
)
_DEFAULT_POLL_SECONDS: Final[float] = 0.25


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(_redact_args(command))}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


def normalize_origin_url(url: str) -> str:
    """
    Canonical form of a repository origin for same-source comparison.

    Credentials are dropped, scheme and host are lowercased, and trailing ``/``
    and ``.git`` suffixes are removed in any order.
    """

    text = url.strip()
    match = _SCHEME_URL_RE.match(text)
    if match is not None:
        host = match.group("host")
        if "@" in host:
            host = host.rsplit("@", 1)[1]
        text = f"{match.group('scheme').lower()}://{host.lower()}{match.group('rest')}"
    else:
        scp = _SCP_URL_RE.match(text)
        if scp is not None and not os.path.isabs(text):
            text = f"{scp.group('host').lower()}:{scp.group('rest')}"

    while True:
        if text.endswith("/") and len(text) > 1:
            text = text[:-1]
        elif text.endswith(".git"):
            text = text[: -len(".git")]
        else:
            return text


def clone_flags(strategy: CloneStrategy, *, depth: int, branch: str | None) -> tuple[str, ...]:
    flags: list[str] = []
    if strategy.is_shallow:
        flags.extend(["--depth", str(depth)])
    if strategy.is_single_branch:
        flags.append("--single-branch")
        if branch:
            flags.extend(["--branch", branch])
    return tuple(flags)


class GitEngine:
    """Thin wrapper over the git CLI with heartbeat-aware process supervision."""

    def __init__(
        self,
        *,
        git_binary: str = "git",
        env_overrides: Mapping[str, str] | None = None,
        heartbeat_interval_seconds: float = 10.0,
        poll_interval_seconds: float = _DEFAULT_POLL_SECONDS,
    ) -> None:
        if heartbeat_interval_seconds <= 0:
            raise ValueError("heartbeat_interval_seconds must be > 0")
        self.git_binary = git_binary
        self._env_overrides = dict(env_overrides or {})
        self._heartbeat_interval = heartbeat_interval_seconds
        self._poll_interval = min(poll_interval_seconds, heartbeat_interval_seconds)

    def clone(
        self,
        url: str,
        destination: Path,
        *,
        strategy: CloneStrategy,
        depth: int = 1,
        branch: str | None = None,
        heartbeat: HeartbeatFn | None = None,
    ) -> CommandResult:
        args = ["clone", "--quiet", *clone_flags(strategy, depth=depth, branch=branch)]
        args.extend(["--", url, str(destination)])
        return self._run_git(args, cwd=destination.parent, heartbeat=heartbeat)

    def is_repository(self, path: Path) -> bool:
        if not (path / ".git").exists():
            return False
        result = self._run_git(["rev-parse", "--git-dir"], cwd=path, check=False)
        return result.returncode == 0

    def remote_origin(self, repo_path: Path) -> str | None:
        """Recorded ``remote.origin.url`` or ``None`` when ``repo_path`` is not a usable tree."""

        if not self.is_repository(repo_path):
            return None
        result = self._run_git(["config", "--get", "remote.origin.url"], cwd=repo_path, check=False)
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def checkout(
        self,
        repo_path: Path,
        ref: str,
        *,
        depth: int | None = None,
        heartbeat: HeartbeatFn | None = None,
    ) -> None:
        """Check out ``ref``, fetching it from origin first when it is not present locally."""

        local = self._run_git(
            ["checkout", "--quiet", "--force", ref], cwd=repo_path, check=False, heartbeat=heartbeat
        )
        if local.returncode == 0:
            return
        fetch = ["fetch", "--quiet"]
        if depth is not None:
            fetch.extend(["--depth", str(depth)])
        fetch.extend(["origin", ref])
        self._run_git(fetch, cwd=repo_path, heartbeat=heartbeat)
        self._run_git(
            ["checkout", "--quiet", "--force", "FETCH_HEAD"], cwd=repo_path, heartbeat=heartbeat
        )

    def head_commit(self, repo_path: Path) -> str:
        return self._run_git(["rev-parse", "HEAD"], cwd=repo_path).stdout.strip()

    def apply_sparse_checkout(
        self,
        repo_path: Path,
        paths: Sequence[str],
        *,
        heartbeat: HeartbeatFn | None = None,
    ) -> None:
        self._run_git(["config", "core.sparseCheckout", "true"], cwd=repo_path)
        git_dir = Path(self._run_git(["rev-parse", "--git-dir"], cwd=repo_path).stdout.strip())
        if not git_dir.is_absolute():
            git_dir = repo_path / git_dir
        info_dir = git_dir / "info"
        info_dir.mkdir(parents=True, exist_ok=True)
        (info_dir / "sparse-checkout").write_text(
            "".join(f"{path}\n" for path in paths), encoding="utf-8"
        )
        self._run_git(["read-tree", "-mu", "HEAD"], cwd=repo_path, heartbeat=heartbeat)

    def compact(self, repo_path: Path, *, heartbeat: HeartbeatFn | None = None) -> None:
        self._run_git(
            ["gc", "--aggressive", "--prune=now", "--quiet"], cwd=repo_path, heartbeat=heartbeat
        )

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        check: bool = True,
        heartbeat: HeartbeatFn | None = None,
    ) -> CommandResult:
        command = (self.git_binary, *args)
        run_cwd = cwd.resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        process = subprocess.Popen(
            command,
            cwd=run_cwd,
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        try:
            stdout, stderr = self._wait(process, heartbeat)
        except BaseException:
            process.kill()
            process.communicate()
            raise

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=process.returncode,
            stdout=stdout,
            stderr=stderr,
        )
        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def _wait(
        self, process: subprocess.Popen[str], heartbeat: HeartbeatFn | None
    ) -> tuple[str, str]:
        if heartbeat is None:
            return process.communicate()
        last_beat = time.monotonic()
        heartbeat()
        while True:
            try:
                return process.communicate(timeout=self._poll_interval)
            except subprocess.TimeoutExpired:
                now = time.monotonic()
                if now - last_beat >= self._heartbeat_interval:
                    heartbeat()
                    last_beat = now


def _redact_args(command: Sequence[str]) -> tuple[str, ...]:
    return tuple(_SCHEME_URL_RE.sub(_strip_userinfo, part) for part in command)


def _strip_userinfo(match: re.Match[str]) -> str:
    return f"{match.group('scheme')}://{match.group('host')}{match.group('rest')}"


__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "HeartbeatFn",
    "clone_flags",
    "normalize_origin_url",
]
