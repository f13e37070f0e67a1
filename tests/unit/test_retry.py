"""Tests for error classification and retry back-off."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock, patch

import pytest

from storyqueue.config import QueueConfig, RetryPolicy
from storyqueue.errors import (
    AIServiceError,
    ErrorCategory,
    ErrorSeverity,
    StoreError,
    ValidationError,
)
from storyqueue.tasks.models import Task, TaskResult, TaskType
from storyqueue.tasks.retry import ErrorClassifier, compute_delay
from tests.conftest import make_config, zero_policy


class TestClassify:
    """Tests for message classification."""

    @pytest.mark.parametrize(
        ("message", "category", "retryable"),
        [
            ("Unauthorized request", ErrorCategory.AUTHENTICATION, False),
            ("Authentication token expired", ErrorCategory.AUTHENTICATION, False),
            ("403 Forbidden", ErrorCategory.AUTHORIZATION, False),
            ("Story not found", ErrorCategory.BUSINESS_LOGIC, False),
            ("Invalid payload: missing story_id", ErrorCategory.VALIDATION, False),
            ("OpenAI returned an error", ErrorCategory.AI_SERVICE, True),
            ("Gemini overloaded", ErrorCategory.AI_SERVICE, True),
            ("sqlite database is locked", ErrorCategory.DATABASE, True),
            ("Parsing failed on model output", ErrorCategory.STORY_GENERATION, True),
            ("503 Service Unavailable", ErrorCategory.EXTERNAL_SERVICE, True),
            ("Rate limit exceeded", ErrorCategory.EXTERNAL_SERVICE, True),
            ("Request timed out", ErrorCategory.NETWORK, True),
            ("ECONNRESET by peer", ErrorCategory.NETWORK, True),
            ("Temporary glitch", ErrorCategory.SYSTEM, True),
        ],
    )
    def test_rules(self, message: str, category: ErrorCategory, retryable: bool) -> None:
        """Test that each rule maps its patterns to the right category."""
        result = ErrorClassifier().classify(message)
        assert result.category == category
        assert result.retryable is retryable
        assert result.matched is not None

    def test_first_match_wins(self) -> None:
        """Test that non-retryable rules are checked before retryable ones."""
        result = ErrorClassifier().classify("Unauthorized: service unavailable")
        assert result.category == ErrorCategory.AUTHENTICATION
        assert result.retryable is False

    def test_fallback(self) -> None:
        """Test that unknown errors are SYSTEM / HIGH / retryable."""
        result = ErrorClassifier().classify("something odd happened")
        assert result.category == ErrorCategory.SYSTEM
        assert result.severity == ErrorSeverity.HIGH
        assert result.retryable is True
        assert result.matched is None

    def test_empty_message(self) -> None:
        """Test that a missing message still classifies."""
        assert ErrorClassifier().classify(None).category == ErrorCategory.SYSTEM


class TestClassifyException:
    """Tests for exception classification."""

    def test_typed_errors_use_their_category(self) -> None:
        """Test that storyqueue errors are trusted over their message."""
        classifier = ErrorClassifier()

        ai = classifier.classify_exception(AIServiceError("unauthorized by upstream"))
        assert ai.category == ErrorCategory.AI_SERVICE
        assert ai.retryable is True

        invalid = classifier.classify_exception(ValidationError("temporary"))
        assert invalid.category == ErrorCategory.VALIDATION
        assert invalid.retryable is False

        store = classifier.classify_exception(StoreError("boom"))
        assert store.category == ErrorCategory.DATABASE

    def test_builtin_network_errors(self) -> None:
        """Test that timeouts and connection errors are NETWORK."""
        classifier = ErrorClassifier()
        assert classifier.classify_exception(TimeoutError()).category == ErrorCategory.NETWORK
        refused = classifier.classify_exception(ConnectionRefusedError("refused"))
        assert refused.category == ErrorCategory.NETWORK
        assert refused.retryable is True

    def test_other_exceptions_use_message(self) -> None:
        """Test that plain exceptions fall back to message rules."""
        result = ErrorClassifier().classify_exception(RuntimeError("Forbidden"))
        assert result.category == ErrorCategory.AUTHORIZATION


class TestComputeDelay:
    """Tests for the back-off formula."""

    def test_exponential_growth_capped(self) -> None:
        """Test base * multiplier^(attempt-1), capped at max."""
        policy = RetryPolicy(
            base_delay_seconds=1, max_delay_seconds=10, backoff_multiplier=2, jitter=False
        )
        assert [compute_delay(policy, n) for n in range(1, 6)] == [1, 2, 4, 8, 10]

    def test_attempt_floor(self) -> None:
        """Test that attempts below 1 use the base delay."""
        policy = RetryPolicy(base_delay_seconds=3, backoff_multiplier=2, jitter=False)
        assert compute_delay(policy, 0) == 3

    def test_jitter_stays_within_bounds(self) -> None:
        """Test that jitter scales into [0.5, 1.0) of the capped delay."""
        policy = RetryPolicy(
            base_delay_seconds=4, max_delay_seconds=60, backoff_multiplier=2, jitter=True
        )
        rng = random.Random(7)
        for attempt in range(1, 8):
            ceiling = min(4 * 2 ** (attempt - 1), 60)
            delay = compute_delay(policy, attempt, rng)
            assert ceiling * 0.5 <= delay < ceiling

    def test_category_policies(self) -> None:
        """Test that the classifier uses the configured per-category policy."""
        classifier = ErrorClassifier(QueueConfig())
        assert classifier.delay_for(ErrorCategory.STORY_GENERATION, 1) == 5
        assert classifier.policy_for(ErrorCategory.NETWORK) == QueueConfig().default_retry_policy


class TestDecide:
    """Tests for automatic retry decisions."""

    def _task(self, retry_count: int = 0, max_retries: int = 3) -> Task:
        return Task(
            owner_id="u",
            task_type=TaskType.EXPORT,
            retry_count=retry_count,
            max_retries=max_retries,
        )

    def test_retryable_failure(self) -> None:
        """Test that a retryable failure with budget is retried."""
        classifier = ErrorClassifier(make_config())
        decision = classifier.decide(self._task(), TaskResult(success=False, error="timeout"))
        assert decision.retry is True
        assert decision.attempt == 1
        assert decision.classification.category == ErrorCategory.NETWORK

    def test_success_never_retried(self) -> None:
        """Test that successful results are not retried."""
        decision = ErrorClassifier().decide(self._task(), TaskResult(success=True))
        assert decision.retry is False

    def test_budget_exhausted(self) -> None:
        """Test that no retry happens once max_retries is used up."""
        decision = ErrorClassifier().decide(
            self._task(retry_count=3), TaskResult(success=False, error="timeout")
        )
        assert decision.retry is False

    def test_non_retryable_category(self) -> None:
        """Test that validation failures are not retried."""
        decision = ErrorClassifier().decide(
            self._task(), TaskResult(success=False, error="Invalid payload")
        )
        assert decision.retry is False
        assert decision.classification.category == ErrorCategory.VALIDATION

    def test_explicit_hint_overrides_classification(self) -> None:
        """Test that the processor's hint wins in both directions."""
        classifier = ErrorClassifier(make_config())
        forced = classifier.decide(
            self._task(), TaskResult(success=False, error="Unauthorized", retryable=True)
        )
        assert forced.retry is True

        refused = classifier.decide(
            self._task(), TaskResult(success=False, error="timeout", data={"can_retry": False})
        )
        assert refused.retry is False

    def test_explicit_delay_overrides_policy(self) -> None:
        """Test that a processor-supplied delay replaces the back-off."""
        decision = ErrorClassifier(QueueConfig()).decide(
            self._task(), TaskResult(success=False, error="timeout", retry_delay_seconds=12)
        )
        assert decision.delay_seconds == 12.0

    def test_delay_follows_attempt(self) -> None:
        """Test that later attempts back off further."""
        config = QueueConfig(
            default_retry_policy=RetryPolicy(
                base_delay_seconds=2, max_delay_seconds=100, backoff_multiplier=3, jitter=False
            )
        )
        classifier = ErrorClassifier(config)
        decision = classifier.decide(
            self._task(retry_count=2), TaskResult(success=False, error="odd failure")
        )
        assert decision.attempt == 3
        assert decision.delay_seconds == 18


class TestExecuteWithRetry:
    """Tests for in-process retries."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        """Test that transient failures are retried within max_attempts."""
        operation = AsyncMock(side_effect=[ConnectionError("reset"), "done"])
        classifier = ErrorClassifier(make_config())

        result = await classifier.execute_with_retry(operation, policy=zero_policy(3))
        assert result == "done"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        """Test that the last error is re-raised once attempts run out."""
        operation = AsyncMock(side_effect=ConnectionError("reset"))
        classifier = ErrorClassifier(make_config())

        with pytest.raises(ConnectionError):
            await classifier.execute_with_retry(operation, policy=zero_policy(3))
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self) -> None:
        """Test that non-retryable errors are not retried."""
        operation = AsyncMock(side_effect=RuntimeError("Unauthorized"))
        classifier = ErrorClassifier(make_config())

        with pytest.raises(RuntimeError):
            await classifier.execute_with_retry(operation, policy=zero_policy(5))
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_category_policy_and_sleep(self) -> None:
        """Test that the category policy bounds attempts and sets the delay."""
        config = QueueConfig(
            retry_policies={
                "ai_service": RetryPolicy(
                    max_attempts=2, base_delay_seconds=3, backoff_multiplier=1, jitter=False
                )
            }
        )
        operation = AsyncMock(side_effect=AIServiceError("overloaded"))
        classifier = ErrorClassifier(config)

        with patch("storyqueue.tasks.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(AIServiceError):
                await classifier.execute_with_retry(operation, category=ErrorCategory.AI_SERVICE)

        assert operation.await_count == 2
        sleep.assert_awaited_once_with(3)
