"""Error codes and the StoryQueueError base class.

Every storyqueue exception carries a machine-readable ``ErrorCode`` and an
``ErrorCategory``; the category decides whether the retry classifier may
try the failed work again.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from storyqueue.errors.categories import NON_RETRYABLE_CATEGORIES, ErrorCategory


class ErrorCode(StrEnum):
    """Stable codes included in CLI output and serialized errors.

    The prefix names the subsystem: CFG (configuration), VAL (input
    validation), TSK (task lifecycle), STO (task store), PRC (processors).
    """

    CFG_INVALID = "CFG_INVALID"
    CFG_MISSING = "CFG_MISSING"

    VAL_INVALID_INPUT = "VAL_INVALID_INPUT"
    VAL_MISSING_REQUIRED = "VAL_MISSING_REQUIRED"
    VAL_INVALID_PAYLOAD = "VAL_INVALID_PAYLOAD"

    TSK_NOT_FOUND = "TSK_NOT_FOUND"
    TSK_EXECUTION_FAILED = "TSK_EXECUTION_FAILED"

    STO_UNAVAILABLE = "STO_UNAVAILABLE"
    STO_QUERY_FAILED = "STO_QUERY_FAILED"

    PRC_FAILED = "PRC_FAILED"
    PRC_AI_SERVICE = "PRC_AI_SERVICE"

    UNKNOWN = "UNKNOWN"


def with_context(details: dict[str, Any] | None, **context: Any) -> dict[str, Any]:
    """Merge non-empty keyword context (task_id, field, ...) into ``details``."""
    merged = dict(details or {})
    merged.update({key: value for key, value in context.items() if value})
    return merged


class StoryQueueError(Exception):
    """Base exception for all storyqueue errors.

    Subclasses override ``default_message``, ``default_code`` and
    ``category``.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code.
        details: Extra context (task id, field name, operation ...).
        cause: The exception that triggered this one, also set as __cause__.
    """

    default_message: str = "An error occurred"
    default_code: ErrorCode = ErrorCode.UNKNOWN
    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause
        super().__init__(self.message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        """Whether the failed work may succeed on a later attempt."""
        return self.category not in NON_RETRYABLE_CATEGORIES

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        args = [repr(self.message)]
        if self.code != self.default_code:
            args.append(f"code={self.code.value!r}")
        if self.details:
            args.append(f"details={self.details!r}")
        if self.cause is not None:
            args.append(f"cause={self.cause!r}")
        return f"{type(self).__name__}({', '.join(args)})"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and JSON logs."""
        payload: dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code.value,
            "detail": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(StoryQueueError):
    """Raised when a config file or setting cannot be used."""

    default_message = "Configuration error"
    default_code = ErrorCode.CFG_INVALID

    def __init__(
        self,
        message: str | None = None,
        *,
        config_key: str | None = None,
        config_path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = with_context(details, config_key=config_key, config_path=config_path)
        super().__init__(message, code=code, details=details, cause=cause)
