"""Error classification and retry back-off.

Maps a failure (message or exception) to an ErrorCategory, a severity
and a retryable flag using an ordered rule table, then derives the
retry delay from the category's RetryPolicy.

Rules are evaluated in order and the first match wins. Non-retryable
rules come first so "Unauthorized: service unavailable" is never retried.
Anything unmatched falls back to SYSTEM / HIGH / retryable.

Usage:
    classifier = ErrorClassifier(config.queue)
    decision = classifier.decide(task, result)
    if decision.retry:
        queued_at = now + timedelta(seconds=decision.delay_seconds)
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from storyqueue.config import QueueConfig, RetryPolicy
from storyqueue.errors import ErrorCategory, ErrorSeverity, StoryQueueError
from storyqueue.errors.categories import NON_RETRYABLE_CATEGORIES
from storyqueue.tasks.models import Task, TaskResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ClassificationRule:
    """Substring patterns that map a message to a category."""

    patterns: tuple[str, ...]
    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool


@dataclass(frozen=True)
class ErrorClassification:
    """Result of classifying one failure."""

    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    message: str
    matched: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "message": self.message,
        }


@dataclass(frozen=True)
class RetryDecision:
    """Whether a failed run is retried, and after how long."""

    retry: bool
    classification: ErrorClassification
    delay_seconds: float = 0.0
    attempt: int = 0


DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    # Non-retryable first
    ClassificationRule(
        ("authentication", "unauthorized"),
        ErrorCategory.AUTHENTICATION,
        ErrorSeverity.MEDIUM,
        False,
    ),
    ClassificationRule(
        ("forbidden",),
        ErrorCategory.AUTHORIZATION,
        ErrorSeverity.MEDIUM,
        False,
    ),
    ClassificationRule(
        ("not found",),
        ErrorCategory.BUSINESS_LOGIC,
        ErrorSeverity.LOW,
        False,
    ),
    ClassificationRule(
        ("invalid payload", "validation failed", "missing required"),
        ErrorCategory.VALIDATION,
        ErrorSeverity.LOW,
        False,
    ),
    # Retryable
    ClassificationRule(
        ("ai service", "openai", "gemini"),
        ErrorCategory.AI_SERVICE,
        ErrorSeverity.HIGH,
        True,
    ),
    ClassificationRule(
        ("database", "sqlite"),
        ErrorCategory.DATABASE,
        ErrorSeverity.HIGH,
        True,
    ),
    ClassificationRule(
        ("parsing", "malformed"),
        ErrorCategory.STORY_GENERATION,
        ErrorSeverity.MEDIUM,
        True,
    ),
    ClassificationRule(
        ("service unavailable", "rate limit", "quota", "throttle", "502", "503"),
        ErrorCategory.EXTERNAL_SERVICE,
        ErrorSeverity.MEDIUM,
        True,
    ),
    ClassificationRule(
        ("timeout", "timed out", "connection", "network", "econnreset"),
        ErrorCategory.NETWORK,
        ErrorSeverity.MEDIUM,
        True,
    ),
    ClassificationRule(
        ("temporary",),
        ErrorCategory.SYSTEM,
        ErrorSeverity.MEDIUM,
        True,
    ),
)


def compute_delay(policy: RetryPolicy, attempt: int, rng: random.Random | None = None) -> float:
    """Back-off delay in seconds for the given 1-based attempt.

    ``min(base * multiplier ** (attempt - 1), max)``, scaled by a factor in
    [0.5, 1.0) when the policy has jitter, so the result never exceeds
    ``max_delay_seconds``.
    """
    attempt = max(1, attempt)
    delay = policy.base_delay_seconds * (policy.backoff_multiplier ** (attempt - 1))
    delay = min(delay, policy.max_delay_seconds)
    if policy.jitter:
        # Spread retries so failed batches do not return in lockstep
        delay *= 0.5 + (rng or random).random() * 0.5
    return delay


class ErrorClassifier:
    """Classifies failures and turns them into retry decisions.

    Args:
        config: Queue config supplying the per-category retry policies.
        rules: Ordered rule table. Defaults to DEFAULT_RULES.
        rng: Random source for jitter (inject a seeded one in tests).
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        rules: tuple[ClassificationRule, ...] = DEFAULT_RULES,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or QueueConfig()
        self._rules = rules
        self._rng = rng or random.Random()

    def classify(self, message: str | None) -> ErrorClassification:
        """Classify an error message by case-insensitive substring match."""
        text = message or ""
        lowered = text.lower()
        for rule in self._rules:
            for pattern in rule.patterns:
                if pattern in lowered:
                    return ErrorClassification(
                        category=rule.category,
                        severity=rule.severity,
                        retryable=rule.retryable,
                        message=text,
                        matched=pattern,
                    )
        return ErrorClassification(
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.HIGH,
            retryable=True,
            message=text,
        )

    def classify_exception(self, exc: BaseException) -> ErrorClassification:
        """Classify an exception, trusting typed storyqueue errors first."""
        message = str(exc) or type(exc).__name__
        if isinstance(exc, StoryQueueError):
            category = exc.category
            retryable = exc.retryable
            severity = ErrorSeverity.MEDIUM if retryable else ErrorSeverity.LOW
            return ErrorClassification(category, severity, retryable, message)
        if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
            return ErrorClassification(
                ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, True, message or "timeout"
            )
        if isinstance(exc, ConnectionError):
            return ErrorClassification(ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, True, message)
        return self.classify(message)

    def policy_for(self, category: ErrorCategory) -> RetryPolicy:
        return self._config.policy_for(category)

    def delay_for(self, category: ErrorCategory, attempt: int) -> float:
        return compute_delay(self.policy_for(category), attempt, self._rng)

    def decide(self, task: Task, result: TaskResult) -> RetryDecision:
        """Decide whether a failed run of ``task`` is retried automatically.

        The processor's explicit hint (``result.retryable`` or
        ``data["can_retry"]``) wins over pattern classification. An explicit
        delay (``retry_delay_seconds`` or ``data["next_retry_delay"]``) wins
        over the category back-off.
        """
        classification = self.classify(result.error)
        if result.success:
            return RetryDecision(False, classification)
        if task.retry_count >= task.max_retries:
            return RetryDecision(False, classification)

        hint = result.retry_hint
        retryable = classification.retryable if hint is None else hint
        if not retryable:
            return RetryDecision(False, classification)

        attempt = task.retry_count + 1
        delay = result.delay_override
        if delay is None:
            delay = self.delay_for(classification.category, attempt)
        return RetryDecision(True, classification, delay, attempt)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        category: ErrorCategory | None = None,
        policy: RetryPolicy | None = None,
        name: str = "operation",
    ) -> T:
        """Await ``operation()`` with in-process retries.

        Attempts are bounded by the policy's ``max_attempts``. The policy
        comes from ``category`` when given, otherwise from the category of
        the first failure. Non-retryable failures are re-raised at once.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                classification = self.classify_exception(e)
                active = policy or self.policy_for(category or classification.category)
                if not classification.retryable or attempt >= active.max_attempts:
                    logger.warning(
                        "%s failed after %d attempt(s) [%s]: %s",
                        name,
                        attempt,
                        classification.category.value,
                        e,
                    )
                    raise
                delay = compute_delay(active, attempt, self._rng)
                logger.info(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    name,
                    attempt,
                    active.max_attempts,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)


__all__ = [
    "ClassificationRule",
    "DEFAULT_RULES",
    "ErrorClassification",
    "ErrorClassifier",
    "NON_RETRYABLE_CATEGORIES",
    "RetryDecision",
    "compute_delay",
]
