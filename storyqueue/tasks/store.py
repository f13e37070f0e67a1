"""Task store contract and the in-memory implementation.

The queue never holds tasks itself; every read and state change goes
through a TaskStore. The only mutual exclusion the queue relies on is the
store's conditional update: ``update`` with ``expected`` statuses and
``claim`` must apply atomically or not at all, so two managers sharing a
store can never both start the same task.

Usage:
    store = InMemoryTaskStore()
    await store.insert(task)
    claimed = await store.claim(task.id, utcnow())
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
from collections.abc import Collection, Mapping
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from storyqueue.errors import ValidationError
from storyqueue.tasks.models import (
    Task,
    TaskFilters,
    TaskStatus,
    TaskType,
    sort_key,
    utcnow,
)

logger = logging.getLogger(__name__)

_TASK_FIELDS = frozenset(f.name for f in dataclasses.fields(Task))
_IMMUTABLE_FIELDS = frozenset({"id", "owner_id", "task_type", "created_at"})


def check_changes(changes: Mapping[str, Any]) -> None:
    """Reject updates to unknown or immutable task fields."""
    unknown = set(changes) - _TASK_FIELDS
    if unknown:
        raise ValidationError(f"Unknown task fields: {sorted(unknown)}", field="changes")
    frozen = set(changes) & _IMMUTABLE_FIELDS
    if frozen:
        raise ValidationError(f"Immutable task fields: {sorted(frozen)}", field="changes")


@runtime_checkable
class TaskStore(Protocol):
    """Persistence contract consumed by the queue service and manager."""

    async def insert(self, task: Task) -> None: ...

    async def get(self, task_id: str) -> Task | None: ...

    async def update(
        self,
        task_id: str,
        changes: Mapping[str, Any],
        expected: Collection[TaskStatus] | None = None,
    ) -> Task | None:
        """Apply ``changes`` if the task exists and its status is in ``expected``.

        Returns the updated task, or None when the task is missing or the
        status precondition failed.
        """
        ...

    async def claim(self, task_id: str, now: datetime) -> Task | None:
        """Atomically move a QUEUED task to RUNNING. None if someone else won."""
        ...

    async def advance_progress(
        self,
        task_id: str,
        progress: int,
        current_step: str | None,
        now: datetime,
    ) -> Task | None:
        """Raise progress to ``max(stored, progress)`` on a RUNNING task."""
        ...

    async def delete(self, task_id: str) -> bool: ...

    async def list_tasks(
        self,
        owner_id: str | None = None,
        filters: TaskFilters | None = None,
    ) -> tuple[list[Task], int]: ...

    async def list_due(
        self,
        now: datetime,
        task_types: Collection[TaskType],
        limit: int,
        exclude: Collection[str] = (),
    ) -> list[Task]:
        """QUEUED tasks with queued_at <= now in scheduling order."""
        ...

    async def list_by_status(self, status: TaskStatus) -> list[Task]: ...

    async def count_by_status(self) -> dict[TaskStatus, int]: ...

    async def count_ahead(self, task: Task) -> int:
        """QUEUED tasks that would be scheduled before ``task``."""
        ...

    async def list_finished_since(self, since: datetime) -> list[Task]:
        """COMPLETED and FAILED tasks with completed_at >= since."""
        ...

    async def delete_finished_before(self, cutoff: datetime) -> int:
        """Delete terminal tasks with completed_at < cutoff. Returns the count."""
        ...


class InMemoryTaskStore:
    """Process-local TaskStore guarded by an asyncio.Lock.

    Returned tasks are copies; mutating them never changes stored state.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._tasks)

    @staticmethod
    def _copy(task: Task) -> Task:
        return copy.deepcopy(task)

    async def insert(self, task: Task) -> None:
        async with self._lock:
            if task.id in self._tasks:
                raise ValidationError(f"Duplicate task id: {task.id}", field="id")
            self._tasks[task.id] = self._copy(task)

    async def get(self, task_id: str) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return self._copy(task) if task else None

    async def update(
        self,
        task_id: str,
        changes: Mapping[str, Any],
        expected: Collection[TaskStatus] | None = None,
    ) -> Task | None:
        check_changes(changes)
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            if expected is not None and task.status not in expected:
                return None
            updated = dataclasses.replace(task, **changes)
            if "updated_at" not in changes:
                updated.updated_at = utcnow()
            self._tasks[task_id] = updated
            return self._copy(updated)

    async def claim(self, task_id: str, now: datetime) -> Task | None:
        return await self.update(
            task_id,
            {"status": TaskStatus.RUNNING, "started_at": now, "updated_at": now},
            expected=(TaskStatus.QUEUED,),
        )

    async def advance_progress(
        self,
        task_id: str,
        progress: int,
        current_step: str | None,
        now: datetime,
    ) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.RUNNING:
                return None
            task.progress = max(task.progress, progress)
            if current_step is not None:
                task.current_step = current_step
            task.updated_at = now
            return self._copy(task)

    async def delete(self, task_id: str) -> bool:
        async with self._lock:
            return self._tasks.pop(task_id, None) is not None

    async def list_tasks(
        self,
        owner_id: str | None = None,
        filters: TaskFilters | None = None,
    ) -> tuple[list[Task], int]:
        filters = filters or TaskFilters()
        async with self._lock:
            matching = [
                task
                for task in self._tasks.values()
                if (owner_id is None or task.owner_id == owner_id) and filters.matches(task)
            ]
        matching.sort(key=sort_key)
        page = matching[filters.offset : filters.offset + filters.limit]
        return [self._copy(t) for t in page], len(matching)

    async def list_due(
        self,
        now: datetime,
        task_types: Collection[TaskType],
        limit: int,
        exclude: Collection[str] = (),
    ) -> list[Task]:
        if limit <= 0:
            return []
        async with self._lock:
            due = [
                task
                for task in self._tasks.values()
                if task.status == TaskStatus.QUEUED
                and task.queued_at <= now
                and task.task_type in task_types
                and task.id not in exclude
            ]
        due.sort(key=sort_key)
        return [self._copy(t) for t in due[:limit]]

    async def list_by_status(self, status: TaskStatus) -> list[Task]:
        async with self._lock:
            tasks = [t for t in self._tasks.values() if t.status == status]
        return [self._copy(t) for t in sorted(tasks, key=sort_key)]

    async def count_by_status(self) -> dict[TaskStatus, int]:
        counts = {status: 0 for status in TaskStatus}
        async with self._lock:
            for task in self._tasks.values():
                counts[task.status] += 1
        return counts

    async def count_ahead(self, task: Task) -> int:
        weight = task.priority.weight
        async with self._lock:
            return sum(
                1
                for other in self._tasks.values()
                if other.status == TaskStatus.QUEUED
                and other.id != task.id
                and (
                    other.priority.weight > weight
                    or (other.priority.weight == weight and other.queued_at < task.queued_at)
                )
            )

    async def list_finished_since(self, since: datetime) -> list[Task]:
        async with self._lock:
            return [
                self._copy(t)
                for t in self._tasks.values()
                if t.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)
                and t.completed_at is not None
                and t.completed_at >= since
            ]

    async def delete_finished_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [
                task_id
                for task_id, t in self._tasks.items()
                if t.is_terminal and t.completed_at is not None and t.completed_at < cutoff
            ]
            for task_id in stale:
                del self._tasks[task_id]
        if stale:
            logger.debug("Deleted %d finished tasks older than %s", len(stale), cutoff)
        return len(stale)


__all__ = ["InMemoryTaskStore", "TaskStore", "check_changes"]
