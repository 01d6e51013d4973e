"""Filesystem helpers shared by provisioning, reclaim and the result store."""

from scan_orchestrator.utils.fs import (
    DiskUsage,
    atomic_write,
    disk_usage,
    is_within,
    safe_delete,
    tree_size_bytes,
)

__all__ = [
    "DiskUsage",
    "atomic_write",
    "disk_usage",
    "is_within",
    "safe_delete",
    "tree_size_bytes",
]
