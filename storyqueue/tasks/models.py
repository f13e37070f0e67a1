"""Task data models for the story generation queue.

Defines the persisted task record, its status/type/priority enums, the
result type returned by processors, and the read-side types (queue
position, metrics, filters, events) exposed by the queue service.

Usage:
    from storyqueue.tasks.models import Task, TaskPriority, TaskType

    task = Task(
        owner_id="user-1",
        task_type=TaskType.STORY_GENERATION,
        payload={"story_id": "...", "analysis_result": {...}, "user_id": "..."},
        priority=TaskPriority.HIGH,
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    """Status of a background task."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELED})
ACTIVE_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING})


class TaskType(str, Enum):
    """Kind of work a task performs."""

    STORY_GENERATION = "story_generation"
    ANALYSIS = "analysis"
    EXPORT = "export"


class TaskPriority(str, Enum):
    """Scheduling priority. Higher weight runs first."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {
    TaskPriority.LOW: 1,
    TaskPriority.NORMAL: 2,
    TaskPriority.HIGH: 3,
    TaskPriority.URGENT: 4,
}


class EventType(str, Enum):
    """Kind of notification published for a task."""

    STATUS = "status"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


def format_duration(seconds: float | None) -> str | None:
    """Render a duration as "45s", "2m 5s" or "1h 3m"."""
    if seconds is None:
        return None
    total = max(0, int(seconds))
    if total < 60:
        return f"{total}s"
    if total < 3600:
        return f"{total // 60}m {total % 60}s"
    return f"{total // 3600}h {(total % 3600) // 60}m"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class TaskResult:
    """Outcome returned by a processor.

    Attributes:
        success: Whether the work completed.
        data: Result payload stored on the task for successful runs.
        error: Error message for failed runs.
        retryable: Explicit retry hint. None leaves the decision to the
            error classifier.
        retry_delay_seconds: Explicit delay before the retry, overriding
            the category back-off.
    """

    success: bool = True
    data: Any = None
    error: str | None = None
    retryable: bool | None = None
    retry_delay_seconds: float | None = None

    @property
    def retry_hint(self) -> bool | None:
        """Explicit retry hint from the processor, if any.

        A mapping ``data`` carrying ``can_retry`` counts as a hint as well.
        """
        if self.retryable is not None:
            return self.retryable
        if isinstance(self.data, dict) and isinstance(self.data.get("can_retry"), bool):
            return self.data["can_retry"]
        return None

    @property
    def delay_override(self) -> float | None:
        """Explicit retry delay in seconds, if the processor supplied one."""
        if self.retry_delay_seconds is not None:
            return max(0.0, float(self.retry_delay_seconds))
        if isinstance(self.data, dict):
            delay = self.data.get("next_retry_delay")
            if isinstance(delay, (int, float)) and not isinstance(delay, bool):
                return max(0.0, float(delay))
        return None


@dataclass
class Task:
    """A persisted unit of background work.

    Attributes:
        owner_id: User who enqueued the task.
        task_type: Kind of work.
        payload: Processor-specific input.
        priority: Scheduling priority.
        id: Unique task identifier (uuid4).
        status: Current lifecycle status.
        progress: Percent complete, 0-100.
        current_step: Label of the last reported progress step.
        result: Processor output for completed tasks.
        error: Readable error for failed/canceled tasks, or the last retry reason.
        retry_count: Automatic plus manual retries consumed.
        max_retries: Retry budget.
        estimated_time: Estimated processing seconds.
        actual_time: Measured processing seconds of the last run.
        created_at: When the task was enqueued.
        queued_at: When the task becomes eligible to run.
        started_at: When the current run was claimed.
        completed_at: When the task reached a terminal status.
        updated_at: Last modification.
    """

    owner_id: str
    task_type: TaskType
    payload: dict[str, Any] = field(default_factory=dict)
    priority: TaskPriority = TaskPriority.NORMAL
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TaskStatus = TaskStatus.QUEUED
    progress: int = 0
    current_step: str | None = None
    result: Any = None
    error: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    estimated_time: int | None = None
    actual_time: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    queued_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        """Check if the task is in a terminal state."""
        return self.status in TERMINAL_STATUSES

    @property
    def can_cancel(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def can_retry(self) -> bool:
        """Manual retry is allowed for failed or canceled tasks with budget left."""
        return (
            self.status in (TaskStatus.FAILED, TaskStatus.CANCELED)
            and self.retry_count < self.max_retries
        )

    @property
    def duration_seconds(self) -> float | None:
        """Get task duration in seconds."""
        if self.started_at is None:
            return None
        end_time = self.completed_at or utcnow()
        return (end_time - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert task to dictionary for serialization.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "task_type": self.task_type.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "payload": self.payload,
            "progress": self.progress,
            "current_step": self.current_step,
            "result": self.result,
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "estimated_time": self.estimated_time,
            "actual_time": self.actual_time,
            "created_at": _iso(self.created_at),
            "queued_at": _iso(self.queued_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
        }

    def to_display_dict(self) -> dict[str, Any]:
        """Owner-facing view with formatted durations and allowed actions."""
        return {
            "id": self.id,
            "type": self.task_type.value,
            "status": self.status.value,
            "priority": self.priority.value,
            "progress": self.progress,
            "current_step": self.current_step,
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "estimated_time": format_duration(self.estimated_time),
            "actual_time": format_duration(self.actual_time),
            "created_at": _iso(self.created_at),
            "can_cancel": self.can_cancel,
            "can_retry": self.can_retry,
        }


@dataclass(frozen=True)
class QueuePosition:
    """Where a queued task sits and roughly how long until it starts."""

    position: int
    estimated_wait_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "estimated_wait_seconds": self.estimated_wait_seconds,
            "estimated_wait": format_duration(self.estimated_wait_seconds),
        }


@dataclass(frozen=True)
class QueueMetrics:
    """Queue counts plus averages over the trailing metrics window.

    Attributes:
        queued: Tasks currently waiting.
        running: Tasks currently executing.
        completed: All-time completed tasks still in the store.
        failed: All-time failed tasks still in the store.
        avg_wait_seconds: Mean queued_at to started_at for finished tasks in the window.
        avg_processing_seconds: Mean processing time for finished tasks in the window.
        success_rate: Fraction (0-1) of finished tasks in the window that completed.
    """

    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    avg_wait_seconds: float = 0.0
    avg_processing_seconds: float = 0.0
    success_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "queued": self.queued,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "avg_wait_seconds": self.avg_wait_seconds,
            "avg_processing_seconds": self.avg_processing_seconds,
            "success_rate": self.success_rate,
        }


@dataclass
class TaskFilters:
    """Filters and pagination for listing an owner's tasks."""

    statuses: list[TaskStatus] | None = None
    types: list[TaskType] | None = None
    priorities: list[TaskPriority] | None = None
    limit: int = 50
    offset: int = 0

    def matches(self, task: Task) -> bool:
        if self.statuses and task.status not in self.statuses:
            return False
        if self.types and task.task_type not in self.types:
            return False
        if self.priorities and task.priority not in self.priorities:
            return False
        return True


@dataclass(frozen=True)
class TaskEvent:
    """Notification emitted on every task state change.

    ``sequence`` increases monotonically per task so consumers can order
    events and drop duplicates.
    """

    task_id: str
    owner_id: str
    event_type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "owner_id": self.owner_id,
            "event_type": self.event_type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }


def sort_key(task: Task) -> tuple[int, datetime, datetime]:
    """Scheduling order: priority desc, queued_at asc, created_at asc."""
    return (-task.priority.weight, task.queued_at, task.created_at)


__all__ = [
    "ACTIVE_STATUSES",
    "EventType",
    "QueueMetrics",
    "QueuePosition",
    "TERMINAL_STATUSES",
    "Task",
    "TaskEvent",
    "TaskFilters",
    "TaskPriority",
    "TaskResult",
    "TaskStatus",
    "TaskType",
    "format_duration",
    "sort_key",
    "utcnow",
]
