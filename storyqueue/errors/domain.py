"""Domain errors raised by the task queue, stores and processors."""

from __future__ import annotations

from typing import Any

from storyqueue.errors.base import ErrorCode, StoryQueueError, with_context
from storyqueue.errors.categories import ErrorCategory


class ValidationError(StoryQueueError):
    """Raised when a task payload or input fails validation."""

    default_message = "Validation failed"
    default_code = ErrorCode.VAL_INVALID_INPUT
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = with_context(details, field=field)
        super().__init__(message, code=code, details=details, cause=cause)


class TaskError(StoryQueueError):
    """Raised for task queue failures tied to a specific task."""

    default_message = "Task operation failed"
    default_code = ErrorCode.TSK_EXECUTION_FAILED

    def __init__(
        self,
        message: str | None = None,
        *,
        task_id: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = with_context(details, task_id=task_id)
        super().__init__(message, code=code, details=details, cause=cause)


class TaskNotFoundError(TaskError):
    """Raised when a task id does not exist in the store."""

    default_message = "Task not found"
    default_code = ErrorCode.TSK_NOT_FOUND
    category = ErrorCategory.BUSINESS_LOGIC


class StoreError(StoryQueueError):
    """Raised when the task store cannot be reached or a query fails."""

    default_message = "Task store unavailable"
    default_code = ErrorCode.STO_UNAVAILABLE
    category = ErrorCategory.DATABASE


class ProcessorError(StoryQueueError):
    """Raised inside processors for unexpected execution failures."""

    default_message = "Task processor failed"
    default_code = ErrorCode.PRC_FAILED


class AIServiceError(ProcessorError):
    """Raised when the AI generation backend fails."""

    default_message = "AI service error"
    default_code = ErrorCode.PRC_AI_SERVICE
    category = ErrorCategory.AI_SERVICE
