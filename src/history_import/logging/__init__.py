"""Structured logging utilities."""

from .diagnostics import (
    INFO,
    WARNING,
    DiagnosticEvent,
    DiagnosticsLog,
    sanitize_metadata,
    utc_timestamp,
)

__all__ = [
    "DiagnosticEvent",
    "DiagnosticsLog",
    "INFO",
    "WARNING",
    "sanitize_metadata",
    "utc_timestamp",
]
