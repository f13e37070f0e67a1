"""Story generation processor.

Turns a chat analysis into a story through an injected ``StoryGenerator``
(the AI backend) and reports progress 10 -> 30 -> 100 on the way.
Failures come back as a failed TaskResult carrying an explicit retry hint,
so the queue service never has to guess for this task type.

Payload:
    story_id: UUID of the story record being generated.
    analysis_result: Mapping produced by chat analysis (``insights`` list optional).
    user_id: UUID of the requesting user.
"""

from __future__ import annotations

import logging
import random
import re
from collections.abc import Mapping
from typing import Any, Protocol

from storyqueue.config import RetryPolicy
from storyqueue.errors import ErrorCategory
from storyqueue.tasks.models import TaskResult, TaskType
from storyqueue.tasks.retry import ErrorClassifier, compute_delay
from storyqueue.tasks.service import CANCEL_MESSAGE, TaskQueueService

logger = logging.getLogger(__name__)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
REQUIRED_FIELDS = ("story_id", "analysis_result", "user_id")

BASE_ESTIMATE_SECONDS = 120
SECONDS_PER_INSIGHT = 5
MAX_ESTIMATE_SECONDS = 300

FINAL_STORY_STATUSES = frozenset({"COMPLETED", "FAILED"})

# Delay suggested to the queue for the next attempt of a failed generation
TASK_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_seconds=5,
    max_delay_seconds=60,
    backoff_multiplier=2,
    jitter=True,
)


class StoryGenerator(Protocol):
    """AI backend that writes the story for an analysis."""

    async def generate(
        self, story_id: str, analysis_result: Mapping[str, Any], user_id: str
    ) -> Any: ...


class StoryRepository(Protocol):
    """Story records owned by the host application."""

    async def get_status(self, story_id: str) -> str | None:
        """Current story status (e.g. "PROCESSING", "COMPLETED"), None if deleted."""
        ...

    async def mark_failed(self, story_id: str, message: str) -> None: ...


class StoryGenerationProcessor:
    """TaskProcessor for ``TaskType.STORY_GENERATION``.

    Args:
        service: Queue service, used for progress, cancellation checks and
            the task's retry budget.
        generator: AI backend.
        stories: Optional story repository; enables the story-state retry
            check and marking the story failed on the final attempt.
        classifier: Error classifier. Defaults to the service's.
        rng: Random source for the suggested retry delay jitter.
    """

    task_type = TaskType.STORY_GENERATION

    def __init__(
        self,
        service: TaskQueueService,
        generator: StoryGenerator,
        stories: StoryRepository | None = None,
        classifier: ErrorClassifier | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.service = service
        self.generator = generator
        self.stories = stories
        self.classifier = classifier or service.classifier
        self._rng = rng or random.Random()

    def validate_payload(self, payload: Mapping[str, Any]) -> bool:
        for name in REQUIRED_FIELDS:
            if not payload.get(name):
                logger.error(f"Missing required field: {name}")
                return False

        for name in ("story_id", "user_id"):
            value = payload[name]
            if not isinstance(value, str) or not UUID_RE.match(value):
                logger.error(f"Invalid {name} format")
                return False

        if not isinstance(payload["analysis_result"], Mapping):
            logger.error("analysis_result must be an object")
            return False

        return True

    def estimate_time(self, payload: Mapping[str, Any]) -> int:
        """120s base plus 5s per analysis insight, capped at 300s."""
        estimate = BASE_ESTIMATE_SECONDS
        analysis = payload.get("analysis_result")
        if isinstance(analysis, Mapping):
            insights = analysis.get("insights")
            if isinstance(insights, list):
                estimate += len(insights) * SECONDS_PER_INSIGHT
            estimate = min(estimate, MAX_ESTIMATE_SECONDS)
        return estimate

    async def _progress(self, task_id: str, progress: int, step: str) -> None:
        try:
            await self.service.update_task_progress(task_id, progress, step)
        except Exception as e:
            logger.error(f"Failed to update task progress for {task_id}: {e}")

    async def _canceled(self, task_id: str) -> TaskResult | None:
        if await self.service.is_canceled(task_id):
            logger.info(f"Story generation for task {task_id} stopped: task was canceled")
            return TaskResult(success=False, error=CANCEL_MESSAGE, retryable=False)
        return None

    async def process(self, task_id: str, payload: Mapping[str, Any]) -> TaskResult:
        if not self.validate_payload(payload):
            return TaskResult(
                success=False,
                error="Invalid payload: missing required fields story_id, analysis_result, user_id",
                retryable=False,
            )

        story_id = payload["story_id"]
        user_id = payload["user_id"]
        analysis = payload["analysis_result"]

        task = await self.service.get_task(task_id)
        if task is None:
            return TaskResult(success=False, error="Task not found", retryable=False)

        attempt = task.retry_count + 1
        total_attempts = task.max_retries + 1
        logger.info(
            f"Starting story generation for story {story_id} "
            f"(attempt {attempt}/{total_attempts})"
        )

        try:
            await self._progress(
                task_id, 10, f"Initializing story generation (attempt {attempt})"
            )
            if canceled := await self._canceled(task_id):
                return canceled

            async def generate() -> Any:
                await self._progress(task_id, 30, "Generating story content")
                return await self.generator.generate(story_id, analysis, user_id)

            story = await self.classifier.execute_with_retry(
                generate,
                category=ErrorCategory.STORY_GENERATION,
                name=f"story-generation:{story_id}",
            )

            if canceled := await self._canceled(task_id):
                return canceled
            await self._progress(task_id, 100, "Story generation completed")
        except Exception as e:
            return await self._failure(task_id, story_id, e, attempt, task.max_retries)

        logger.info(f"Successfully generated story {story_id} on attempt {attempt}")
        data: dict[str, Any] = {
            "story_id": story_id,
            "message": "Story generated successfully",
            "attempt": attempt,
            "total_attempts": total_attempts,
        }
        if story is not None:
            data["story"] = story
        return TaskResult(success=True, data=data)

    async def _failure(
        self,
        task_id: str,
        story_id: str,
        error: Exception,
        attempt: int,
        max_retries: int,
    ) -> TaskResult:
        message = str(error) or "Story generation failed"
        logger.error(f"Story generation failed for task {task_id} (attempt {attempt}): {message}")

        retryable = await self.is_retryable(error, story_id)
        can_retry = attempt <= max_retries and retryable
        if not can_retry:
            await self._mark_story_failed(story_id, message, attempt)

        delay = compute_delay(TASK_RETRY_POLICY, attempt, self._rng) if can_retry else None
        return TaskResult(
            success=False,
            error=message,
            retryable=can_retry,
            retry_delay_seconds=delay,
            data={
                "story_id": story_id,
                "attempt": attempt,
                "total_attempts": max_retries + 1,
                "can_retry": can_retry,
                "is_retryable": retryable,
                "next_retry_delay": delay,
            },
        )

    async def is_retryable(self, error: Exception, story_id: str) -> bool:
        """Classify ``error``; unmatched errors fall back to the story's state.

        A deleted story or one already in a final state is never retried.
        When the story cannot be checked the error counts as retryable.
        """
        classification = self.classifier.classify_exception(error)
        if classification.matched is not None or classification.category != ErrorCategory.SYSTEM:
            logger.info(
                f"Error classified as {classification.category.value} "
                f"(retryable={classification.retryable})"
            )
            return classification.retryable

        if self.stories is None:
            return True
        try:
            status = await self.stories.get_status(story_id)
        except Exception as e:
            logger.warning(f"Could not check story status for retry decision: {e}")
            return True

        if status is None:
            logger.info("Story not found, marking as non-retryable")
            return False
        if status.upper() in FINAL_STORY_STATUSES:
            logger.info(f"Story already in final state: {status}, marking as non-retryable")
            return False
        return True

    async def _mark_story_failed(self, story_id: str, message: str, attempt: int) -> None:
        if self.stories is None:
            return
        try:
            await self.stories.mark_failed(
                story_id, f"Failed after {attempt} attempts: {message}"
            )
            logger.info(f"Marked story {story_id} as failed after {attempt} attempts")
        except Exception as e:
            logger.error(f"Failed to mark story {story_id} as failed: {e}")


__all__ = [
    "StoryGenerationProcessor",
    "StoryGenerator",
    "StoryRepository",
    "TASK_RETRY_POLICY",
]
