"""Queue service: the public task API and the single finalization point.

Owners enqueue, query, cancel and retry tasks here; processors report
progress here; the manager hands every run outcome to ``complete_task``,
which is the only place that decides between retry and a terminal state.

Usage:
    service = TaskQueueService(store, notifier, config.queue, registry)
    task_id = await service.enqueue_task(
        "user-1", TaskType.STORY_GENERATION, payload, priority=TaskPriority.HIGH
    )
    position = await service.get_queue_position(task_id)
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Collection, Mapping
from datetime import datetime, timedelta
from typing import Any, Protocol

from storyqueue.config import DEFAULT_ESTIMATED_SECONDS, QueueConfig
from storyqueue.errors import StoreError, invalid_payload, task_not_found, validation_required
from storyqueue.observability.logging import log_event
from storyqueue.tasks.models import (
    ACTIVE_STATUSES,
    EventType,
    QueueMetrics,
    QueuePosition,
    Task,
    TaskEvent,
    TaskFilters,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
    utcnow,
)
from storyqueue.tasks.notifications import NotificationSink
from storyqueue.tasks.processors import ProcessorRegistry
from storyqueue.tasks.retry import ErrorClassifier, RetryDecision
from storyqueue.tasks.store import TaskStore

logger = logging.getLogger(__name__)

CANCEL_MESSAGE = "Task cancelled by user"
ADMIN_CANCEL_MESSAGE = "Cancelled by administrator"
RECOVERED_MESSAGE = "Requeued after worker interruption"


class SchedulerHook(Protocol):
    """What the service needs from the scheduler that runs its tasks."""

    def wake(self, delay: float | None = None) -> None: ...

    def release(self, task_id: str, *, cancel_run: bool = False) -> None: ...


class TaskQueueService:
    """Task queue operations on top of a TaskStore and a NotificationSink.

    Args:
        store: Persistence for task records.
        notifier: Receives every task event. Failures are logged, never raised.
        config: Queue settings (tables, retry policies, windows).
        registry: Processors, used for payload validation and estimates.
        classifier: Retry decision engine. Built from ``config`` if omitted.
        clock: Source of "now" (inject a fake in tests).
    """

    def __init__(
        self,
        store: TaskStore,
        notifier: NotificationSink | None = None,
        config: QueueConfig | None = None,
        registry: ProcessorRegistry | None = None,
        classifier: ErrorClassifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.config = config or QueueConfig()
        self.registry = registry or ProcessorRegistry()
        self.classifier = classifier or ErrorClassifier(self.config)
        self._clock = clock
        self._scheduler: SchedulerHook | None = None
        self._sequence = itertools.count(1)

    def attach_scheduler(self, scheduler: SchedulerHook | None) -> None:
        self._scheduler = scheduler

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Events and scheduler signals
    # ------------------------------------------------------------------

    async def _publish(self, task: Task, event_type: EventType, data: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        event = TaskEvent(
            task_id=task.id,
            owner_id=task.owner_id,
            event_type=event_type,
            data=data,
            timestamp=self._clock(),
            sequence=next(self._sequence),
        )
        try:
            await self.notifier.publish(event)
        except Exception as e:
            logger.warning(
                "Failed to publish %s event for task %s: %s", event_type.value, task.id, e
            )

    def _wake(self, delay: float | None = None) -> None:
        if self._scheduler is not None:
            self._scheduler.wake(delay)

    def _release(self, task_id: str, *, cancel_run: bool = False) -> None:
        if self._scheduler is not None:
            self._scheduler.release(task_id, cancel_run=cancel_run)

    @staticmethod
    def _status_data(task: Task, **extra: Any) -> dict[str, Any]:
        return {
            "status": task.status.value,
            "progress": task.progress,
            "retry_count": task.retry_count,
            "max_retries": task.max_retries,
            **extra,
        }

    # ------------------------------------------------------------------
    # Owner-facing operations
    # ------------------------------------------------------------------

    async def enqueue_task(
        self,
        owner_id: str,
        task_type: TaskType | str,
        payload: Mapping[str, Any],
        priority: TaskPriority | str = TaskPriority.NORMAL,
        max_retries: int | None = None,
    ) -> str:
        """Create a QUEUED task and return its id.

        Raises:
            ValidationError: ``owner_id`` is empty or the registered processor
                rejected the payload.
            StoreError: The task could not be persisted.
        """
        if not owner_id:
            raise validation_required("owner_id")
        task_type = TaskType(task_type)
        priority = TaskPriority(priority)
        payload = dict(payload)

        processor = self.registry.get(task_type)
        if processor is not None and not processor.validate_payload(payload):
            raise invalid_payload(task_type.value)

        estimated = self.config.estimate_for(task_type)
        if estimated is None and processor is not None:
            estimated = processor.estimate_time(payload)

        now = self._clock()
        task = Task(
            owner_id=owner_id,
            task_type=task_type,
            payload=payload,
            priority=priority,
            max_retries=self.config.default_max_retries if max_retries is None else max_retries,
            estimated_time=estimated,
            created_at=now,
            queued_at=now,
            updated_at=now,
        )
        await self.store.insert(task)
        log_event(
            logger,
            "task.enqueued",
            task_id=task.id,
            task_type=task_type.value,
            priority=priority.value,
            owner_id=owner_id,
        )

        await self._publish(task, EventType.STATUS, self._status_data(task))
        self._wake()
        return task.id

    async def get_task(self, task_id: str, owner_id: str | None = None) -> Task | None:
        """Fetch a task. With ``owner_id``, tasks of other owners read as missing."""
        task = await self.store.get(task_id)
        if task is None or (owner_id is not None and task.owner_id != owner_id):
            return None
        return task

    async def get_user_tasks(
        self, owner_id: str, filters: TaskFilters | None = None
    ) -> tuple[list[Task], int]:
        """An owner's tasks (priority desc, queued_at asc) and the unpaginated total."""
        return await self.store.list_tasks(owner_id=owner_id, filters=filters)

    async def list_tasks(self, filters: TaskFilters | None = None) -> tuple[list[Task], int]:
        """All owners' tasks, for operators."""
        return await self.store.list_tasks(filters=filters)

    async def cancel_task(
        self,
        task_id: str,
        owner_id: str | None = None,
        reason: str = CANCEL_MESSAGE,
    ) -> bool:
        """Cancel a QUEUED or RUNNING task. False when missing or already terminal."""
        task = await self.get_task(task_id, owner_id)
        if task is None or not task.can_cancel:
            return False

        now = self._clock()
        updated = await self.store.update(
            task_id,
            {"status": TaskStatus.CANCELED, "completed_at": now, "error": reason, "updated_at": now},
            expected=ACTIVE_STATUSES,
        )
        if updated is None:
            return False

        self._release(task_id, cancel_run=self.config.preempt_on_cancel)
        log_event(logger, "task.canceled", task_id=task_id, previous_status=task.status.value)
        await self._publish(updated, EventType.CANCELED, self._status_data(updated, error=reason))
        self._wake()
        return True

    async def retry_task(self, task_id: str, owner_id: str | None = None) -> bool:
        """Requeue a FAILED or CANCELED task that still has retry budget."""
        task = await self.get_task(task_id, owner_id)
        if task is None or not task.can_retry:
            return False

        now = self._clock()
        updated = await self.store.update(
            task_id,
            {
                "status": TaskStatus.QUEUED,
                "retry_count": task.retry_count + 1,
                "error": None,
                "result": None,
                "progress": 0,
                "current_step": None,
                "started_at": None,
                "completed_at": None,
                "actual_time": None,
                "queued_at": now,
                "updated_at": now,
            },
            expected=(TaskStatus.FAILED, TaskStatus.CANCELED),
        )
        if updated is None:
            return False

        log_event(logger, "task.retried", task_id=task_id, retry_count=updated.retry_count)
        await self._publish(updated, EventType.STATUS, self._status_data(updated))
        self._wake()
        return True

    async def get_queue_position(self, task_id: str) -> QueuePosition | None:
        """1-based position and estimated wait for a QUEUED task, else None."""
        task = await self.store.get(task_id)
        if task is None or task.status != TaskStatus.QUEUED:
            return None

        ahead = await self.store.count_ahead(task)
        position = ahead + 1
        counts = await self.store.count_by_status()
        available = max(0, self.config.max_concurrent_tasks - counts[TaskStatus.RUNNING])
        per_task = (
            self.config.estimate_for(task.task_type)
            or task.estimated_time
            or DEFAULT_ESTIMATED_SECONDS
        )
        return QueuePosition(
            position=position,
            estimated_wait_seconds=max(0, position - available) * per_task,
        )

    async def get_queue_metrics(self) -> QueueMetrics:
        """Status counts plus averages over the trailing metrics window."""
        counts = await self.store.count_by_status()
        since = self._clock() - timedelta(hours=self.config.metrics_window_hours)
        finished = await self.store.list_finished_since(since)

        waits = [
            (t.started_at - t.queued_at).total_seconds()
            for t in finished
            if t.started_at is not None
        ]
        processing: list[float] = []
        for t in finished:
            if t.actual_time is not None:
                processing.append(float(t.actual_time))
            elif t.started_at is not None and t.completed_at is not None:
                processing.append((t.completed_at - t.started_at).total_seconds())
        completed = sum(1 for t in finished if t.status == TaskStatus.COMPLETED)

        return QueueMetrics(
            queued=counts[TaskStatus.QUEUED],
            running=counts[TaskStatus.RUNNING],
            completed=counts[TaskStatus.COMPLETED],
            failed=counts[TaskStatus.FAILED],
            avg_wait_seconds=round(max(0.0, sum(waits) / len(waits)), 2) if waits else 0.0,
            avg_processing_seconds=(
                round(sum(processing) / len(processing), 2) if processing else 0.0
            ),
            success_rate=round(completed / len(finished), 2) if finished else 0.0,
        )

    # ------------------------------------------------------------------
    # Processor-facing operations
    # ------------------------------------------------------------------

    async def update_task_progress(
        self, task_id: str, progress: int, current_step: str | None = None
    ) -> None:
        """Record progress for a RUNNING task. Never raises on store failure."""
        progress = max(0, min(100, int(progress)))
        try:
            updated = await self.store.advance_progress(
                task_id, progress, current_step, self._clock()
            )
        except StoreError as e:
            logger.warning("Progress update for task %s not stored: %s", task_id, e)
            return
        if updated is None:
            logger.debug("Ignoring progress for task %s (not running)", task_id)
            return

        remaining = None
        if updated.estimated_time is not None:
            remaining = round(updated.estimated_time * (100 - updated.progress) / 100)
        await self._publish(
            updated,
            EventType.PROGRESS,
            {
                "progress": updated.progress,
                "current_step": updated.current_step,
                "estimated_time_remaining": remaining,
            },
        )

    async def is_canceled(self, task_id: str) -> bool:
        """True once the task was canceled (or deleted) while a processor works on it."""
        task = await self.store.get(task_id)
        return task is None or task.status == TaskStatus.CANCELED

    # ------------------------------------------------------------------
    # Manager-facing operations
    # ------------------------------------------------------------------

    def _elapsed(self, task: Task, now: datetime) -> int | None:
        if task.started_at is None:
            return None
        return max(1, round((now - task.started_at).total_seconds()))

    async def list_due_tasks(
        self, task_types: Collection[TaskType], limit: int, exclude: Collection[str] = ()
    ) -> list[Task]:
        """QUEUED tasks eligible to start now, in scheduling order."""
        return await self.store.list_due(self._clock(), task_types, limit, exclude)

    async def claim_task(self, task_id: str) -> Task | None:
        """Atomically start a QUEUED task. None when another worker won the claim."""
        claimed = await self.store.claim(task_id, self._clock())
        if claimed is None:
            return None
        log_event(
            logger,
            "task.started",
            task_id=task_id,
            task_type=claimed.task_type.value,
            attempt=claimed.retry_count + 1,
        )
        await self._publish(claimed, EventType.STATUS, self._status_data(claimed))
        return claimed

    async def complete_task(
        self,
        task_id: str,
        result: TaskResult,
        *,
        started_at: datetime | None = None,
    ) -> Task | None:
        """Finalize one run: schedule a retry or persist the terminal state.

        ``started_at`` identifies the run; a result from an older run of a
        task that has since been restarted is discarded.

        Returns the updated task, or None when the result was discarded
        because the task was no longer RUNNING (canceled meanwhile).

        Raises:
            TaskNotFoundError: The task does not exist.
        """
        task = await self.store.get(task_id)
        if task is None:
            self._release(task_id)
            raise task_not_found(task_id)

        if started_at is not None and task.started_at != started_at:
            logger.info("Discarding result from a superseded run of task %s", task_id)
            return None

        try:
            if task.status != TaskStatus.RUNNING:
                logger.info(
                    "Discarding result for task %s in status %s", task_id, task.status.value
                )
                return None

            now = self._clock()
            actual = self._elapsed(task, now)

            if not result.success and task.retry_count < task.max_retries:
                decision = self.classifier.decide(task, result)
                if decision.retry:
                    return await self._schedule_retry(task, result, decision, now, actual)

            return await self._finalize(task, result, now, actual)
        finally:
            self._release(task_id)

    async def _schedule_retry(
        self,
        task: Task,
        result: TaskResult,
        decision: RetryDecision,
        now: datetime,
        actual: int | None,
    ) -> Task | None:
        attempt = task.retry_count + 1
        error = f"Retry {attempt}/{task.max_retries}: {result.error or 'Unknown error'}"
        next_run = now + timedelta(seconds=decision.delay_seconds)
        updated = await self.store.update(
            task.id,
            {
                "status": TaskStatus.QUEUED,
                "retry_count": attempt,
                "error": error,
                "progress": 0,
                "current_step": None,
                "started_at": None,
                "actual_time": actual,
                "queued_at": next_run,
                "updated_at": now,
            },
            expected=(TaskStatus.RUNNING,),
        )
        if updated is None:
            logger.info("Task %s left RUNNING before its retry was scheduled", task.id)
            return None

        log_event(
            logger,
            "task.retry_scheduled",
            task_id=task.id,
            attempt=attempt,
            max_retries=task.max_retries,
            delay_seconds=round(decision.delay_seconds, 2),
            category=decision.classification.category.value,
        )
        await self._publish(
            updated,
            EventType.STATUS,
            self._status_data(updated, next_attempt_at=next_run.isoformat()),
        )
        self._wake(decision.delay_seconds)
        return updated

    async def _finalize(
        self, task: Task, result: TaskResult, now: datetime, actual: int | None
    ) -> Task | None:
        changes: dict[str, Any] = {
            "completed_at": now,
            "actual_time": actual,
            "updated_at": now,
        }
        if result.success:
            changes.update(
                status=TaskStatus.COMPLETED, result=result.data, error=None, progress=100
            )
        else:
            changes.update(status=TaskStatus.FAILED, error=result.error or "Task failed")

        updated = await self.store.update(task.id, changes, expected=(TaskStatus.RUNNING,))
        if updated is None:
            logger.info("Discarding result for task %s (canceled while running)", task.id)
            return None

        log_event(
            logger,
            "task.finalized",
            level=logging.INFO if result.success else logging.WARNING,
            task_id=task.id,
            status=updated.status.value,
            actual_time=actual or 0,
            retry_count=updated.retry_count,
        )
        if result.success:
            await self._publish(
                updated,
                EventType.COMPLETED,
                self._status_data(updated, result=result.data, actual_time=actual),
            )
        else:
            classification = self.classifier.classify(updated.error)
            await self._publish(
                updated,
                EventType.FAILED,
                self._status_data(
                    updated,
                    error=updated.error,
                    category=classification.category.value,
                ),
            )
        self._wake()
        return updated

    async def reject_task(self, task: Task, reason: str) -> Task | None:
        """Fail a QUEUED task whose payload no longer validates at pickup."""
        now = self._clock()
        updated = await self.store.update(
            task.id,
            {"status": TaskStatus.FAILED, "error": reason, "completed_at": now, "updated_at": now},
            expected=(TaskStatus.QUEUED,),
        )
        if updated is None:
            return None
        log_event(
            logger, "task.rejected", level=logging.WARNING, task_id=task.id, reason=reason
        )
        await self._publish(updated, EventType.FAILED, self._status_data(updated, error=reason))
        return updated

    # ------------------------------------------------------------------
    # Maintenance sweeps
    # ------------------------------------------------------------------

    async def cleanup_old_tasks(self, older_than_days: int | None = None) -> int:
        """Delete terminal tasks finished before the retention window."""
        days = self.config.retention_days if older_than_days is None else older_than_days
        cutoff = self._clock() - timedelta(days=days)
        deleted = await self.store.delete_finished_before(cutoff)
        log_event(logger, "queue.cleanup", deleted=deleted, retention_days=days)
        return deleted

    async def recover_orphaned_tasks(
        self, exclude: Collection[str] = (), *, force: bool = False
    ) -> int:
        """Requeue RUNNING tasks that no live run owns.

        A task counts as orphaned once it has been RUNNING longer than its
        type timeout plus ``orphan_grace_seconds``; ``force`` requeues every
        RUNNING task not in ``exclude`` and is only safe when no other
        manager shares the store (operator CLI). Retry budget is not consumed.
        """
        now = self._clock()
        recovered = 0
        for task in await self.store.list_by_status(TaskStatus.RUNNING):
            if task.id in exclude:
                continue
            if not force:
                limit = self.config.timeout_for(task.task_type) + self.config.orphan_grace_seconds
                if task.started_at is not None and now - task.started_at < timedelta(
                    seconds=limit
                ):
                    continue
            updated = await self.store.update(
                task.id,
                {
                    "status": TaskStatus.QUEUED,
                    "started_at": None,
                    "progress": 0,
                    "current_step": None,
                    "error": RECOVERED_MESSAGE,
                    "updated_at": now,
                },
                expected=(TaskStatus.RUNNING,),
            )
            if updated is None:
                continue
            recovered += 1
            await self._publish(updated, EventType.STATUS, self._status_data(updated))

        if recovered:
            log_event(logger, "queue.recovered", level=logging.WARNING, recovered=recovered)
            self._wake()
        return recovered

    async def delete_task(self, task_id: str) -> bool:
        """Hard-delete a terminal task. Active tasks must be canceled first."""
        task = await self.store.get(task_id)
        if task is None or not task.is_terminal:
            return False
        return await self.store.delete(task_id)


__all__ = [
    "ADMIN_CANCEL_MESSAGE",
    "CANCEL_MESSAGE",
    "SchedulerHook",
    "TaskQueueService",
]
