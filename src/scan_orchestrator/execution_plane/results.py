"""Local filesystem result store: ``<results_root>/<run_id>/summary.json`` plus report copies."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from scan_orchestrator.constants import SUMMARY_FILENAME
from scan_orchestrator.domain import ids
from scan_orchestrator.domain.models import ScanSummary
from scan_orchestrator.utils.fs import atomic_write


@dataclass(frozen=True, slots=True)
class StoredResult:
    location: str
    summary_path: str | None
    report_paths: dict[str, str]
    missing: tuple[str, ...] = ()


class LocalResultStore:
    def __init__(self, results_root: str | Path, *, logger: Any | None = None) -> None:
        self._root = Path(results_root).expanduser().absolute()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    def location_for(self, run_id: str) -> Path:
        ids.validate_run_id(run_id)
        return self._root / run_id

    def store(
        self,
        summary: ScanSummary,
        *,
        reports: dict[str, str] | None = None,
        store_summary: bool = True,
        store_reports: bool = True,
    ) -> StoredResult:
        """
        Persist ``summary`` and copy each report file next to it.

        Reports are written as ``<report_type><suffix>``; a report whose source
        file vanished is listed in ``missing`` instead of failing the store.
        """

        location = self.location_for(summary.run_id)
        location.mkdir(parents=True, exist_ok=True)

        summary_path: Path | None = None
        if store_summary:
            summary_path = location / SUMMARY_FILENAME
            atomic_write(
                summary_path,
                json.dumps(summary.to_dict(), sort_keys=True, indent=2, ensure_ascii=False) + "\n",
            )

        copied: dict[str, str] = {}
        missing: list[str] = []
        if store_reports:
            for report_type, source in sorted((reports or {}).items()):
                source_path = Path(source)
                if not source_path.is_file():
                    missing.append(report_type)
                    continue
                destination = location / f"{report_type}{source_path.suffix}"
                _copy_atomic(source_path, destination)
                copied[report_type] = str(destination)

        self._logger.info(
            "scan_results_stored",
            run_id=summary.run_id,
            location=str(location),
            reports=len(copied),
            missing_reports=len(missing),
        )
        return StoredResult(
            location=str(location),
            summary_path=str(summary_path) if summary_path is not None else None,
            report_paths=copied,
            missing=tuple(missing),
        )

    def load_summary(self, run_id: str) -> ScanSummary | None:
        path = self.location_for(run_id) / SUMMARY_FILENAME
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return ScanSummary.from_json(raw)


def _copy_atomic(source: Path, destination: Path) -> None:
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
    )
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        shutil.copyfile(source, temp_path)
        os.replace(temp_path, destination)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


__all__ = ["LocalResultStore", "StoredResult"]
