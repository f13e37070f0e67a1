"""Error categories and severities used for retry classification.

Kept separate from the exception classes so configuration and the
classifier can import them without pulling in the task layer.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCategory(StrEnum):
    """Broad failure category assigned to an error message or exception."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    BUSINESS_LOGIC = "business_logic"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    NETWORK = "network"
    SYSTEM = "system"
    AI_SERVICE = "ai_service"
    STORY_GENERATION = "story_generation"


# Failures in these categories will not succeed on a later attempt
NON_RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.AUTHENTICATION,
        ErrorCategory.AUTHORIZATION,
        ErrorCategory.VALIDATION,
        ErrorCategory.BUSINESS_LOGIC,
    }
)


class ErrorSeverity(StrEnum):
    """How bad a classified failure is."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


__all__ = ["ErrorCategory", "ErrorSeverity", "NON_RETRYABLE_CATEGORIES"]
