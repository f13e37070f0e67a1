"""Unified exception hierarchy for storyqueue.

Exception Hierarchy:
    StoryQueueError (base)
    +-- ConfigurationError - Configuration and settings issues
    +-- ValidationError - Payload and input validation failures
    +-- TaskError - Task queue failures
    |   +-- TaskNotFoundError - Unknown task id
    +-- StoreError - Task store unavailable or query failed
    +-- ProcessorError - Unexpected processor failure
        +-- AIServiceError - AI generation backend failure

Every error class carries a ``category`` (ErrorCategory) that the retry
classifier uses before falling back to message matching.

Usage:
    from storyqueue.errors import StoreError, TaskNotFoundError

    try:
        await service.complete_task(task_id, result)
    except TaskNotFoundError as e:
        logger.warning("Completion for unknown task: %s (code: %s)", e.message, e.code)
"""

# --- base ---
from storyqueue.errors.base import (
    ConfigurationError,
    ErrorCode,
    StoryQueueError,
)
from storyqueue.errors.categories import ErrorCategory, ErrorSeverity

# --- domain errors ---
from storyqueue.errors.domain import (
    AIServiceError,
    ProcessorError,
    StoreError,
    TaskError,
    TaskNotFoundError,
    ValidationError,
)

# --- convenience factories ---
from storyqueue.errors.factories import (
    invalid_payload,
    store_unavailable,
    task_not_found,
    validation_required,
)

__all__ = [
    # Base
    "ErrorCode",
    "StoryQueueError",
    "ConfigurationError",
    # Classification
    "ErrorCategory",
    "ErrorSeverity",
    # Domain
    "ValidationError",
    "TaskError",
    "TaskNotFoundError",
    "StoreError",
    "ProcessorError",
    "AIServiceError",
    # Factories
    "task_not_found",
    "validation_required",
    "invalid_payload",
    "store_unavailable",
]
