"""Per-run workspace directories under a shared root."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from scan_orchestrator.constants import (
    OUTPUT_DIRNAME,
    PARTIAL_REPO_DIRNAME,
    REPO_DIRNAME,
    WORKSPACE_MARKER_FILENAME,
)
from scan_orchestrator.domain import ids
from scan_orchestrator.utils.fs import atomic_write, safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved path bundle for one run."""

    root: Path
    workspace_dir: Path
    repo_dir: Path
    partial_dir: Path
    output_dir: Path
    marker_path: Path


@dataclass(frozen=True, slots=True)
class WorkspaceMarker:
    """Which run and attempt last populated a workspace, and from where."""

    run_id: str
    attempt: int
    origin: str
    created_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "attempt": self.attempt,
            "origin": self.origin,
            "created_at": self.created_at.isoformat(),
        }


class WorkspaceManager:
    """
    Manage ``<root>/<run_id>`` workspaces.

    Layout per run: ``repo/`` (the checked-out tree), ``.repo.partial/`` (an
    in-flight clone), ``output/`` (tool output) and ``.workspace.json`` (marker).
    Every delete goes through ``safe_delete`` bounded by the root.
    """

    def __init__(
        self,
        workspace_root: str | Path,
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._root = Path(workspace_root).expanduser().absolute()
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else _utc_now
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    def paths_for(self, run_id: str) -> WorkspacePaths:
        ids.validate_run_id(run_id)
        workspace_dir = self._root / run_id
        return WorkspacePaths(
            root=self._root,
            workspace_dir=workspace_dir,
            repo_dir=workspace_dir / REPO_DIRNAME,
            partial_dir=workspace_dir / PARTIAL_REPO_DIRNAME,
            output_dir=workspace_dir / OUTPUT_DIRNAME,
            marker_path=workspace_dir / WORKSPACE_MARKER_FILENAME,
        )

    def ensure(self, run_id: str) -> WorkspacePaths:
        paths = self.paths_for(run_id)
        with self._lock:
            paths.workspace_dir.mkdir(parents=True, exist_ok=True)
            paths.output_dir.mkdir(exist_ok=True)
        return paths

    def read_marker(self, run_id: str) -> WorkspaceMarker | None:
        paths = self.paths_for(run_id)
        try:
            raw = json.loads(paths.marker_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(raw, dict):
            return None
        try:
            return WorkspaceMarker(
                run_id=str(raw["run_id"]),
                attempt=int(raw["attempt"]),
                origin=str(raw["origin"]),
                created_at=datetime.fromisoformat(str(raw["created_at"])),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def write_marker(self, run_id: str, attempt: int, origin: str) -> WorkspaceMarker:
        paths = self.ensure(run_id)
        marker = WorkspaceMarker(
            run_id=run_id, attempt=attempt, origin=origin, created_at=self._now_fn()
        )
        atomic_write(
            paths.marker_path,
            json.dumps(marker.to_dict(), sort_keys=True, indent=2) + "\n",
        )
        return marker

    def prepare(self, run_id: str, attempt: int, origin: str) -> WorkspacePaths:
        """
        Create the workspace and stamp it for ``run_id``/``attempt``.

        Content left by a different run id is destroyed first; content from an
        earlier attempt of the same run is kept for reuse.
        """

        with self._lock:
            paths = self.ensure(run_id)
            previous = self.read_marker(run_id)
            if previous is not None and previous.run_id != run_id:
                self.destroy_tree(paths.repo_dir)
                self.destroy_tree(paths.partial_dir)
            self.write_marker(run_id, attempt, origin)
            return paths

    def destroy_tree(self, path: Path) -> bool:
        with self._lock:
            if not self._root.exists():
                return False
            return safe_delete(path, self._root)

    def reclaim(self, run_id: str) -> bool:
        """Delete the whole workspace of ``run_id``; ``False`` when it did not exist."""

        return self.destroy_tree(self.paths_for(run_id).workspace_dir)

    def list_workspaces(self) -> tuple[str, ...]:
        if not self._root.is_dir():
            return ()
        return tuple(
            sorted(
                entry.name
                for entry in self._root.iterdir()
                if entry.is_dir() and not entry.name.startswith(".")
            )
        )


def _utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = ["WorkspaceManager", "WorkspaceMarker", "WorkspacePaths"]
