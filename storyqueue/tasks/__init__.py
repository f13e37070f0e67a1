"""Task queue for story generation and other background work.

Components:
    - Task / TaskResult / TaskEvent: data models
    - TaskStore: persistence contract (InMemoryTaskStore, SQLiteTaskStore)
    - ErrorClassifier: failure classification and retry back-off
    - TaskQueueService: enqueue/query/cancel/retry and run finalization
    - TaskQueueManager: asyncio scheduler with a global concurrency cap
    - Notification sinks: polling buffer, WebSocket push, fan-out

Usage:
    from storyqueue.tasks import TaskPriority, TaskType, build_task_queue

    queue = build_task_queue()
    queue.register_processor(my_processor)
    async with queue:
        task_id = await queue.service.enqueue_task(
            "user-1", TaskType.EXPORT, {"format": "pdf"}, priority=TaskPriority.HIGH
        )
"""

from storyqueue.tasks.manager import TaskQueueManager
from storyqueue.tasks.models import (
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
    format_duration,
)
from storyqueue.tasks.notifications import (
    FanoutNotificationSink,
    NotificationSink,
    PollingNotificationSink,
    WebSocketNotificationSink,
)
from storyqueue.tasks.processors import ProcessorRegistry, TaskProcessor
from storyqueue.tasks.retry import (
    ErrorClassification,
    ErrorClassifier,
    RetryDecision,
    compute_delay,
)
from storyqueue.tasks.runtime import TaskQueue, build_task_queue
from storyqueue.tasks.service import (
    ADMIN_CANCEL_MESSAGE,
    CANCEL_MESSAGE,
    TaskQueueService,
)
from storyqueue.tasks.sqlite_store import SQLiteTaskStore
from storyqueue.tasks.store import InMemoryTaskStore, TaskStore

__all__ = [
    # Models
    "EventType",
    "QueueMetrics",
    "QueuePosition",
    "Task",
    "TaskEvent",
    "TaskFilters",
    "TaskPriority",
    "TaskResult",
    "TaskStatus",
    "TaskType",
    "format_duration",
    # Stores
    "InMemoryTaskStore",
    "SQLiteTaskStore",
    "TaskStore",
    # Processors
    "ProcessorRegistry",
    "TaskProcessor",
    # Retry
    "ErrorClassification",
    "ErrorClassifier",
    "RetryDecision",
    "compute_delay",
    # Service and scheduler
    "ADMIN_CANCEL_MESSAGE",
    "CANCEL_MESSAGE",
    "TaskQueueManager",
    "TaskQueueService",
    # Notifications
    "FanoutNotificationSink",
    "NotificationSink",
    "PollingNotificationSink",
    "WebSocketNotificationSink",
    # Runtime
    "TaskQueue",
    "build_task_queue",
]
