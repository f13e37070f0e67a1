"""Shared fixtures for storyqueue tests.

Provides a fast queue config (tiny timeouts, zero back-off), a fake clock,
an event-recording notification sink and a configurable fake processor.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Collection, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from storyqueue.config import QueueConfig, RetryPolicy, reset_config
from storyqueue.tasks.models import TaskEvent, TaskResult, TaskStatus, TaskType
from storyqueue.tasks.service import TaskQueueService
from storyqueue.tasks.store import InMemoryTaskStore

EPOCH = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

STORY_ID = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"
USER_ID = "6fa459ea-ee8a-3ca4-894e-db77e160355e"


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class RecordingSink:
    """NotificationSink that keeps every published event."""

    def __init__(self) -> None:
        self.events: list[TaskEvent] = []

    async def publish(self, event: TaskEvent) -> None:
        self.events.append(event)

    def for_task(self, task_id: str) -> list[TaskEvent]:
        return [e for e in self.events if e.task_id == task_id]


class FakeScheduler:
    """SchedulerHook that records wake and release calls."""

    def __init__(self) -> None:
        self.wakes: list[float | None] = []
        self.released: list[tuple[str, bool]] = []

    def wake(self, delay: float | None = None) -> None:
        self.wakes.append(delay)

    def release(self, task_id: str, *, cancel_run: bool = False) -> None:
        self.released.append((task_id, cancel_run))


Handler = Callable[[str, Mapping[str, Any]], Awaitable[TaskResult]]


class FakeProcessor:
    """Processor whose behavior is supplied by an async handler.

    Payloads with ``{"valid": False}`` fail validation.
    """

    def __init__(
        self,
        handler: Handler | None = None,
        task_type: TaskType = TaskType.EXPORT,
        estimate: int = 42,
    ) -> None:
        self.task_type = task_type
        self.handler = handler
        self.estimate = estimate
        self.calls: list[str] = []

    def validate_payload(self, payload: Mapping[str, Any]) -> bool:
        return payload.get("valid", True) is not False

    def estimate_time(self, payload: Mapping[str, Any]) -> int:
        return self.estimate

    async def process(self, task_id: str, payload: Mapping[str, Any]) -> TaskResult:
        self.calls.append(task_id)
        if self.handler is None:
            return TaskResult(success=True, data={"task_id": task_id})
        return await self.handler(task_id, payload)


def zero_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=0,
        max_delay_seconds=0,
        backoff_multiplier=1,
        jitter=False,
    )


def make_config(**overrides: Any) -> QueueConfig:
    """Queue config suited to tests: fast polling, short timeouts, no back-off."""
    values: dict[str, Any] = {
        "max_concurrent_tasks": 2,
        "poll_interval_seconds": 0.05,
        "timeout_seconds": {"story_generation": 2, "analysis": 2, "export": 2},
        "retry_policies": {},
        "default_retry_policy": zero_policy(),
    }
    values.update(overrides)
    return QueueConfig(**values)


async def wait_for_status(
    service: TaskQueueService,
    task_id: str,
    statuses: Collection[TaskStatus],
    timeout: float = 5.0,
) -> None:
    """Poll until the task reaches one of ``statuses``."""

    async def poll() -> None:
        while True:
            task = await service.get_task(task_id)
            if task is not None and task.status in statuses:
                return
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture(autouse=True)
def _reset_config_singleton():
    """Reset the config singleton around each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def config() -> QueueConfig:
    return make_config()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def service(
    store: InMemoryTaskStore,
    sink: RecordingSink,
    config: QueueConfig,
    clock: FakeClock,
    scheduler: FakeScheduler,
) -> TaskQueueService:
    """Service on an in-memory store with a fake clock and scheduler."""
    svc = TaskQueueService(store, sink, config, clock=clock)
    svc.attach_scheduler(scheduler)
    return svc


@pytest.fixture
def story_payload() -> dict[str, Any]:
    return {
        "story_id": STORY_ID,
        "user_id": USER_ID,
        "analysis_result": {"insights": ["a", "b", "c"]},
    }
