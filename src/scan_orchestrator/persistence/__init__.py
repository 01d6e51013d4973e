"""
scan-orchestrator — persistence layer

File: src/scan_orchestrator/persistence/__init__.py

Purpose
- SQLite state store, migrations and repositories backing the durable substrate.
"""

from scan_orchestrator.persistence.repositories import RunRepo, StepAttemptRepo, StepRepo
from scan_orchestrator.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "RunRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "StepAttemptRepo",
    "StepRepo",
]
