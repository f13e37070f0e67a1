"""Observability helpers (structured logging and timing)."""

from storyqueue.observability.logging import (
    StructuredFormatter,
    configure_logging,
    log_event,
    timed_operation,
)

__all__ = [
    "StructuredFormatter",
    "configure_logging",
    "log_event",
    "timed_operation",
]
