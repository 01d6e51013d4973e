"""Execution plane: running scanning tools and persisting their results."""

from scan_orchestrator.execution_plane.results import LocalResultStore, StoredResult
from scan_orchestrator.execution_plane.scanner import (
    CommandScanTool,
    ScanInvocation,
    ScanTool,
    ScanToolRegistry,
    ToolSpec,
)

__all__ = [
    "CommandScanTool",
    "LocalResultStore",
    "ScanInvocation",
    "ScanTool",
    "ScanToolRegistry",
    "StoredResult",
    "ToolSpec",
]
