"""Convenience factory functions for common error scenarios.

Provides shorthand functions for creating commonly-used error instances
with appropriate error codes and details pre-filled.
"""

from __future__ import annotations

from storyqueue.errors.base import ErrorCode
from storyqueue.errors.domain import (
    StoreError,
    TaskNotFoundError,
    ValidationError,
)


def task_not_found(task_id: str) -> TaskNotFoundError:
    """Create a TaskNotFoundError for a missing task."""
    return TaskNotFoundError(
        f"Task not found: {task_id}",
        task_id=task_id,
    )


def validation_required(field: str) -> ValidationError:
    """Create a ValidationError for a missing required field."""
    return ValidationError(
        f"Missing required field: {field}",
        field=field,
        code=ErrorCode.VAL_MISSING_REQUIRED,
    )


def invalid_payload(task_type: str, reason: str | None = None) -> ValidationError:
    """Create a ValidationError for a payload rejected by its processor."""
    message = f"Invalid payload for task type '{task_type}'"
    if reason:
        message = f"{message}: {reason}"
    return ValidationError(
        message,
        field="payload",
        code=ErrorCode.VAL_INVALID_PAYLOAD,
        details={"task_type": task_type},
    )


def store_unavailable(operation: str, cause: Exception | None = None) -> StoreError:
    """Create a StoreError for a failed store operation."""
    return StoreError(
        f"Task store unavailable during {operation}",
        details={"operation": operation},
        cause=cause,
    )
