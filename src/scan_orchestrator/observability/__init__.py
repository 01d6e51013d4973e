"""Observability: queue-backed JSON-lines logging, correlation scopes and redaction."""

from scan_orchestrator.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    redact_text,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
