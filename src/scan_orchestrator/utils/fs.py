"""
scan-orchestrator — filesystem utilities

File: src/scan_orchestrator/utils/fs.py

Purpose
- Atomic writes, guarded deletion inside a workspace root, tree sizing and
  free-space measurement for admission.

Functional requirements
- Atomic writes go through a temp file in the destination directory and a
  single ``os.replace``.
- Deletion refuses paths outside the configured root and never follows symlinks
  out of it.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "DiskUsage",
    "atomic_write",
    "disk_usage",
    "is_within",
    "nearest_existing_ancestor",
    "safe_delete",
    "tree_size_bytes",
]


@dataclass(frozen=True, slots=True)
class DiskUsage:
    path: str
    total_bytes: int
    free_bytes: int


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    Readers observe either the previous content or the complete new content.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data.encode(encoding) if isinstance(data, str) else data

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
        resolved_child = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False
    return _is_relative_to(resolved_child, resolved_parent)


def safe_delete(path: PathLike, root: PathLike) -> bool:
    """
    Delete ``path`` only if it is contained within ``root``.

    Returns ``False`` when there was nothing to delete. Symlinks are unlinked
    without traversing into their targets.
    """

    workspace = Path(root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return False

    candidate = target.parent.resolve(strict=True) / target.name
    if candidate == workspace or not _is_relative_to(candidate, workspace):
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return True

    if not _is_relative_to(target.resolve(strict=True), workspace):
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_dir():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True


def tree_size_bytes(path: PathLike) -> int:
    """Apparent size of every regular file under ``path``; symlinks are not followed."""

    total = 0
    for dirpath, _dirnames, filenames in os.walk(path, followlinks=False):
        for name in filenames:
            with contextlib.suppress(FileNotFoundError):
                stat = os.lstat(os.path.join(dirpath, name))
                if not os.path.islink(os.path.join(dirpath, name)):
                    total += stat.st_size
    return total


def nearest_existing_ancestor(path: PathLike) -> Path:
    candidate = Path(path).absolute()
    while not candidate.exists():
        if candidate.parent == candidate:
            break
        candidate = candidate.parent
    return candidate


def disk_usage(path: PathLike) -> DiskUsage:
    """Free space on the filesystem holding ``path`` (or its nearest existing ancestor)."""

    anchor = nearest_existing_ancestor(path)
    usage = shutil.disk_usage(anchor)
    return DiskUsage(path=str(anchor), total_bytes=usage.total, free_bytes=usage.free)


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    """Best-effort directory fsync after ``os.replace``."""

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
