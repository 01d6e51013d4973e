"""
scan-orchestrator — durable execution substrate.

File: src/scan_orchestrator/substrate/__init__.py

Purpose
- One contract (``ExecutionSubstrate``) with an in-memory backend for tests and
  crash replay, and a SQLite backend for durable local runs and workers.
"""

from scan_orchestrator.substrate.base import (
    BaseSubstrate,
    ExecutionSubstrate,
    RunStart,
    SimulatedCrashError,
    StepContext,
)
from scan_orchestrator.substrate.memory import InMemorySubstrate
from scan_orchestrator.substrate.sqlite import SQLiteSubstrate

__all__ = [
    "BaseSubstrate",
    "ExecutionSubstrate",
    "InMemorySubstrate",
    "RunStart",
    "SQLiteSubstrate",
    "SimulatedCrashError",
    "StepContext",
]
