"""
scan-orchestrator — shared pytest fixtures.

File: tests/conftest.py
Last updated: 2026-10-17

Purpose
- Isolate git from the developer's global config and provide small local
  repositories reachable through ``file://`` URLs.
- Reset structlog after every test so configured sinks never leak between tests.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import structlog

GitRunner = Callable[..., subprocess.CompletedProcess[str]]
CommitFn = Callable[[Path, str, str, str], str]


def _run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = (
            f"git command failed: git {' '.join(args)}\n"
            f"stdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        )
        raise AssertionError(msg)
    return completed


def _commit_file(worktree: Path, rel_path: str, content: str, message: str) -> str:
    path = worktree / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    _run_git(worktree, "add", "--all")
    _run_git(worktree, "commit", "-m", message)
    return _run_git(worktree, "rev-parse", "HEAD").stdout.strip()


@pytest.fixture(autouse=True)
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Scan Tester")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "scan-tester@example.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Scan Tester")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "scan-tester@example.invalid")


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.fixture
def run_git() -> GitRunner:
    return _run_git


@pytest.fixture
def commit_file() -> CommitFn:
    return _commit_file


@pytest.fixture
def source_repo(tmp_path: Path) -> Path:
    """A non-bare repository on branch ``main`` with two commits."""

    repo = tmp_path / "origin"
    repo.mkdir()
    _run_git(repo, "init", "--quiet", "--initial-branch=main")
    _commit_file(repo, "README.md", "# sample\n", "initial")
    _commit_file(repo, "src/app.py", "print('hello')\n", "add app")
    return repo


@pytest.fixture
def source_url(source_repo: Path) -> str:
    return source_repo.resolve().as_uri()


_DEPLOYMENT_TOML = """\
[meta]
schema_version = 1

[paths]
workspace_root = "workspaces"
state_db = "state/scanorch.sqlite"
results_root = "results"

[admission]
base_repository_bytes = 1024
full_history_overhead_bytes = 0
single_branch_overhead_bytes = 0
shallow_overhead_bytes = 0
tool_footprint_bytes = 0
output_budget_bytes = 0
temp_budget_bytes = 0
max_workspace_bytes = 1048576
min_free_fraction = 0.0

[retry.step]
initial_interval_seconds = 0.01
backoff_coefficient = 1.0
maximum_interval_seconds = 0.01
maximum_attempts = 2

[retry.insufficient_space]
initial_interval_seconds = 0.01
backoff_coefficient = 1.0
maximum_interval_seconds = 0.01
maximum_attempts = 2

[worker]
poll_interval_seconds = 0.05
lease_seconds = 60
lanes = ["default", "priority", "long-running"]

[tools.gitleaks]
enabled = false

[tools.shell]
command = ["sh", "-c", "ls > \\"$1/files.txt\\"", "sh", "{output_dir}"]
reports = { listing = "files.txt" }

[observability]
log_dir = "logs"
"""


@pytest.fixture
def deployment_config(tmp_path: Path) -> Path:
    """A ``scanorch.toml`` with tiny admission budgets, fast retries and an ``sh`` tool.

    Relative paths resolve against the file's directory, ``tmp_path / "deploy"``.
    """

    deploy = tmp_path / "deploy"
    deploy.mkdir()
    config_path = deploy / "scanorch.toml"
    config_path.write_text(_DEPLOYMENT_TOML, encoding="utf-8")
    return config_path
