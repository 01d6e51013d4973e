"""
scan-orchestrator — repository provisioning step.

File: src/scan_orchestrator/integration_plane/provisioning.py

Purpose
- Materialize the requested repository at ``<workspace>/repo`` so that any
  number of repeats converge on the same tree.

Functional requirements
- A tree already present with the same normalized origin is reused; anything
  else in its place is destroyed with a guarded delete.
- Fresh clones land in ``.repo.partial`` and are renamed into place, so a tree
  at ``repo`` is always complete.
- Git exit 128 triggers a storage re-probe; an unhealthy probe turns the
  failure into ``StorageFailureError``.
- Sparse checkout and history compaction are best-effort; their failures are
  recorded in ``notes``.
"""

from __future__ import annotations

import contextlib
import os
from collections.abc import Callable, Iterator
from typing import Any

import structlog

from scan_orchestrator.domain.errors import StorageFailureError, is_storage_os_error
from scan_orchestrator.domain.models import ProvisionResult, ScanRequest
from scan_orchestrator.integration_plane.git_engine import (
    GitCommandError,
    GitEngine,
    HeartbeatFn,
    normalize_origin_url,
)
from scan_orchestrator.integration_plane.storage_health import (
    StorageHealthChecker,
    StorageProbe,
)
from scan_orchestrator.integration_plane.workspace_manager import (
    WorkspaceManager,
    WorkspacePaths,
)
from scan_orchestrator.utils.fs import tree_size_bytes

_GIT_FATAL_EXIT = 128


class RepositoryProvisioner:
    """Idempotent clone-or-reuse of a request's repository into a run workspace."""

    def __init__(
        self,
        workspace_manager: WorkspaceManager,
        *,
        git_engine: GitEngine | None = None,
        storage_probe: StorageHealthChecker | None = None,
        logger: Any | None = None,
    ) -> None:
        self._workspaces = workspace_manager
        self._git = git_engine if git_engine is not None else GitEngine()
        self._probe: StorageHealthChecker = (
            storage_probe if storage_probe is not None else StorageProbe()
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def git(self) -> GitEngine:
        return self._git

    def provision(
        self,
        run_id: str,
        request: ScanRequest,
        workspace: WorkspacePaths | None = None,
        heartbeat: HeartbeatFn | None = None,
        *,
        attempt: int = 1,
    ) -> ProvisionResult:
        paths = workspace if workspace is not None else self._workspaces.paths_for(run_id)
        origin = normalize_origin_url(request.repository_url)
        config = request.config
        notes: list[str] = []

        self._probe.require_healthy(paths.root)
        with self._storage_guard(paths):
            self._workspaces.prepare(run_id, attempt, origin)

        reused = False
        with self._storage_guard(paths):
            if paths.repo_dir.exists() or paths.repo_dir.is_symlink():
                recorded = self._git.remote_origin(paths.repo_dir)
                if recorded is not None and normalize_origin_url(recorded) == origin:
                    reused = True
                else:
                    self._logger.info(
                        "workspace_tree_replaced",
                        run_id=run_id,
                        recorded_origin=normalize_origin_url(recorded) if recorded else None,
                    )
                    self._workspaces.destroy_tree(paths.repo_dir)

        ref = request.requested_ref
        if reused:
            if ref is not None:
                self._git_step(
                    paths,
                    lambda: self._git.checkout(
                        paths.repo_dir,
                        ref,
                        depth=config.shallow_clone_depth
                        if config.clone_strategy.is_shallow
                        else None,
                        heartbeat=heartbeat,
                    ),
                )
        else:
            self._clone_fresh(paths, request, heartbeat)
            checkout_ref = request.commit_sha or (
                request.branch if not config.clone_strategy.is_single_branch else None
            )
            if checkout_ref is not None:
                self._git_step(
                    paths,
                    lambda: self._git.checkout(
                        paths.repo_dir,
                        checkout_ref,
                        depth=config.shallow_clone_depth
                        if config.clone_strategy.is_shallow
                        else None,
                        heartbeat=heartbeat,
                    ),
                )

        sparse_applied = False
        if config.uses_sparse_checkout:
            try:
                self._git.apply_sparse_checkout(
                    paths.repo_dir, config.sparse_checkout_paths, heartbeat=heartbeat
                )
                sparse_applied = True
            except (GitCommandError, OSError) as exc:
                notes.append(f"sparse checkout skipped: {exc}")

        compacted = False
        if not reused and config.clone_strategy.is_shallow:
            try:
                self._git.compact(paths.repo_dir, heartbeat=heartbeat)
                compacted = True
            except (GitCommandError, OSError) as exc:
                notes.append(f"history compaction skipped: {exc}")

        with self._storage_guard(paths):
            size = tree_size_bytes(paths.repo_dir)

        result = ProvisionResult(
            repo_path=str(paths.repo_dir),
            origin=origin,
            reused=reused,
            ref=ref,
            size_bytes=size,
            sparse_applied=sparse_applied,
            compacted=compacted,
            notes=tuple(notes),
        )
        self._logger.info(
            "repository_provisioned",
            run_id=run_id,
            reused=reused,
            size_bytes=size,
            sparse_applied=sparse_applied,
            compacted=compacted,
        )
        return result

    def _clone_fresh(
        self,
        paths: WorkspacePaths,
        request: ScanRequest,
        heartbeat: HeartbeatFn | None,
    ) -> None:
        config = request.config
        with self._storage_guard(paths):
            self._workspaces.destroy_tree(paths.partial_dir)
        branch = request.branch if config.clone_strategy.is_single_branch else None
        self._git_step(
            paths,
            lambda: self._git.clone(
                request.repository_url,
                paths.partial_dir,
                strategy=config.clone_strategy,
                depth=config.shallow_clone_depth,
                branch=branch,
                heartbeat=heartbeat,
            ),
        )
        with self._storage_guard(paths):
            os.replace(paths.partial_dir, paths.repo_dir)

    def _git_step(self, paths: WorkspacePaths, action: Callable[[], object]) -> None:
        try:
            with self._storage_guard(paths):
                action()
        except GitCommandError as exc:
            if exc.returncode == _GIT_FATAL_EXIT:
                health = self._probe.check(paths.root)
                if not health.healthy:
                    raise StorageFailureError(
                        str(paths.root), health.reason or "storage probe failed"
                    ) from exc
            raise

    @contextlib.contextmanager
    def _storage_guard(self, paths: WorkspacePaths) -> Iterator[None]:
        try:
            yield
        except OSError as exc:
            if is_storage_os_error(exc):
                raise StorageFailureError(str(paths.workspace_dir), str(exc)) from exc
            raise


__all__ = ["RepositoryProvisioner"]
