"""Wiring for a complete queue: store, sinks, service and manager.

Usage:
    queue = build_task_queue(get_config())
    queue.register_processor(StoryGenerationProcessor(queue.service, generator))
    async with queue:
        task_id = await queue.service.enqueue_task(owner_id, TaskType.STORY_GENERATION, payload)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import TracebackType

from storyqueue.config import StoryQueueConfig
from storyqueue.tasks.manager import TaskQueueManager
from storyqueue.tasks.notifications import (
    FanoutNotificationSink,
    NotificationSink,
    PollingNotificationSink,
    WebSocketNotificationSink,
)
from storyqueue.tasks.processors import ProcessorRegistry, TaskProcessor
from storyqueue.tasks.retry import ErrorClassifier
from storyqueue.tasks.service import TaskQueueService
from storyqueue.tasks.sqlite_store import SQLiteTaskStore
from storyqueue.tasks.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class TaskQueue:
    """A wired queue. Use as an async context manager to run the scheduler."""

    config: StoryQueueConfig
    store: TaskStore
    service: TaskQueueService
    manager: TaskQueueManager
    polling: PollingNotificationSink
    push: WebSocketNotificationSink

    def register_processor(self, processor: TaskProcessor) -> None:
        self.manager.register_processor(processor)

    async def broadcast_system_message(self, message: str, level: str = "info") -> int:
        """Keep a notice for polling clients and push it to every connected socket."""
        self.polling.add_system_message(message, level)
        return await self.push.broadcast_system_message(message, level)

    async def start(self) -> None:
        await self.manager.start()

    async def stop(self, drain_timeout: float = 30.0) -> None:
        await self.manager.stop(drain_timeout=drain_timeout)

    async def __aenter__(self) -> TaskQueue:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()


def build_task_queue(
    config: StoryQueueConfig | None = None,
    store: TaskStore | None = None,
    extra_sinks: tuple[NotificationSink, ...] = (),
) -> TaskQueue:
    """Build a queue from config.

    Args:
        config: Settings. Defaults to a fresh StoryQueueConfig.
        store: Task store. Defaults to SQLite at ``config.database_path``.
        extra_sinks: Additional notification sinks next to the polling
            buffer and the WebSocket push channel.
    """
    config = config or StoryQueueConfig()
    if store is None:
        store = SQLiteTaskStore(config.database_path)
        logger.info("Using SQLite task store at %s", config.database_path)

    polling = PollingNotificationSink(config.notifications)
    push = WebSocketNotificationSink()
    notifier = FanoutNotificationSink(polling, push, *extra_sinks)

    service = TaskQueueService(
        store,
        notifier,
        config.queue,
        ProcessorRegistry(),
        ErrorClassifier(config.queue),
    )
    manager = TaskQueueManager(service)
    return TaskQueue(
        config=config,
        store=store,
        service=service,
        manager=manager,
        polling=polling,
        push=push,
    )


__all__ = ["TaskQueue", "build_task_queue"]
