"""
scan-orchestrator — package root.

Failure-aware orchestration of repository scan pipelines: admission, provisioning,
scan execution, result persistence and workspace reclaim on top of a durable
execution substrate.

Importing the package has no side effects (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
