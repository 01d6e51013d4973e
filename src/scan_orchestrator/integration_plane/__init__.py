"""
scan-orchestrator — integration plane.

File: src/scan_orchestrator/integration_plane/__init__.py

Purpose
- Everything that touches the repository and the workspace filesystem: the git
  CLI wrapper, the storage health probe, per-run workspaces and the
  provisioning step built on top of them.
"""

from scan_orchestrator.integration_plane.git_engine import (
    CommandResult,
    GitCommandError,
    GitEngine,
    GitEngineError,
    normalize_origin_url,
)
from scan_orchestrator.integration_plane.provisioning import RepositoryProvisioner
from scan_orchestrator.integration_plane.storage_health import StorageHealth, StorageProbe
from scan_orchestrator.integration_plane.workspace_manager import (
    WorkspaceManager,
    WorkspaceMarker,
    WorkspacePaths,
)

__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "RepositoryProvisioner",
    "StorageHealth",
    "StorageProbe",
    "WorkspaceManager",
    "WorkspaceMarker",
    "WorkspacePaths",
    "normalize_origin_url",
]
