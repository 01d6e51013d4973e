"""Write/read/delete probe that tells failed storage apart from ordinary errors."""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import structlog

from scan_orchestrator.constants import STORAGE_PROBE_PREFIX
from scan_orchestrator.domain.errors import StorageFailureError, is_storage_os_error

_PROBE_PAYLOAD = b"scan-orchestrator storage probe\n"


@dataclass(frozen=True, slots=True)
class StorageHealth:
    path: str
    healthy: bool
    reason: str | None
    checked_at: datetime


class StorageHealthChecker(Protocol):
    def require_healthy(self, path: str | Path) -> None: ...

    def check(self, path: str | Path) -> StorageHealth: ...


class StorageProbe:
    """Probe a directory by writing, syncing, reading back and deleting a small file."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def require_healthy(self, path: str | Path) -> None:
        """Raise ``StorageFailureError`` when ``path`` cannot hold files.

        OSErrors that do not look like failed storage propagate unchanged.
        """

        root = Path(path)
        probe = root / f"{STORAGE_PROBE_PREFIX}{uuid.uuid4().hex}"
        try:
            root.mkdir(parents=True, exist_ok=True)
            fd = os.open(probe, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            try:
                os.write(fd, _PROBE_PAYLOAD)
                os.fsync(fd)
            finally:
                os.close(fd)
            if probe.read_bytes() != _PROBE_PAYLOAD:
                raise StorageFailureError(str(root), "probe read back different content")
            probe.unlink()
        except OSError as exc:
            if is_storage_os_error(exc):
                self._logger.warning("storage_probe_failed", path=str(root), error=str(exc))
                raise StorageFailureError(str(root), str(exc)) from exc
            raise

    def check(self, path: str | Path) -> StorageHealth:
        try:
            self.require_healthy(path)
        except StorageFailureError as exc:
            return StorageHealth(str(path), False, exc.reason, datetime.now(UTC))
        except OSError as exc:
            return StorageHealth(str(path), False, str(exc), datetime.now(UTC))
        return StorageHealth(str(path), True, None, datetime.now(UTC))


__all__ = ["StorageHealth", "StorageHealthChecker", "StorageProbe"]
