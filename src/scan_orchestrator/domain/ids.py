"""Run identity derivation and validation."""

from __future__ import annotations

import re
import time
from typing import Final

from scan_orchestrator.constants import RESTART_ID_SEPARATOR

MAX_ID_PART_LENGTH: Final[int] = 64
MAX_RUN_ID_LENGTH: Final[int] = 255

_ID_PART_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_RUN_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_LANE_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
_RESTART_SUFFIX_RE: Final[re.Pattern[str]] = re.compile(
    re.escape(RESTART_ID_SEPARATOR) + r"[0-9]+$"
)

__all__ = [
    "MAX_ID_PART_LENGTH",
    "MAX_RUN_ID_LENGTH",
    "derive_run_id",
    "restart_run_id",
    "validate_id_part",
    "validate_lane_name",
    "validate_run_id",
]


def derive_run_id(app_id: str, component: str, build_id: str, tool_kind: str) -> str:
    """Return the deterministic run identity ``{app}-{component}-{build}-{tool}``."""

    parts = (
        validate_id_part(app_id, "app_id"),
        validate_id_part(component, "component"),
        validate_id_part(build_id, "build_id"),
        validate_id_part(tool_kind, "tool_kind"),
    )
    run_id = "-".join(parts)
    validate_run_id(run_id)
    return run_id


def restart_run_id(original_run_id: str, *, timestamp_ms: int | None = None) -> str:
    """Return a fresh identity for relaunching ``original_run_id``.

    A previous restart suffix is replaced rather than stacked.
    """

    validate_run_id(original_run_id)
    base = _RESTART_SUFFIX_RE.sub("", original_run_id)
    stamp = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
    if stamp < 0:
        raise ValueError("timestamp_ms must be >= 0")
    run_id = f"{base}{RESTART_ID_SEPARATOR}{stamp}"
    validate_run_id(run_id)
    return run_id


def validate_id_part(value: str, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    if not value:
        raise ValueError(f"{name} must not be empty")
    if len(value) > MAX_ID_PART_LENGTH:
        raise ValueError(f"{name} must be <= {MAX_ID_PART_LENGTH} characters")
    if not _ID_PART_RE.fullmatch(value):
        raise ValueError(f"{name} must match [A-Za-z0-9][A-Za-z0-9._-]*, got {value!r}")
    return value


def validate_run_id(run_id: str) -> None:
    if not isinstance(run_id, str):
        raise ValueError(f"run_id must be a string, got {type(run_id).__name__}")
    if not run_id or len(run_id) > MAX_RUN_ID_LENGTH:
        raise ValueError(f"run_id must be 1..{MAX_RUN_ID_LENGTH} characters")
    if ".." in run_id or not _RUN_ID_RE.fullmatch(run_id):
        raise ValueError(f"invalid run_id: {run_id!r}")


def validate_lane_name(lane: str) -> str:
    if not isinstance(lane, str) or not _LANE_RE.fullmatch(lane):
        raise ValueError(f"invalid lane name: {lane!r}")
    return lane
