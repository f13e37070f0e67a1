"""Processor contract and registry.

A processor performs the actual work for one task type. It must not raise
out of ``process``: infrastructure failures come back as a failed
TaskResult (retryable or left to the classifier) and malformed requests or
missing resources as a failed result with ``retryable=False``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any, Protocol, runtime_checkable

from storyqueue.tasks.models import TaskResult, TaskType

logger = logging.getLogger(__name__)


@runtime_checkable
class TaskProcessor(Protocol):
    """Executes tasks of a single type."""

    task_type: TaskType

    def validate_payload(self, payload: Mapping[str, Any]) -> bool: ...

    def estimate_time(self, payload: Mapping[str, Any]) -> int: ...

    async def process(self, task_id: str, payload: Mapping[str, Any]) -> TaskResult: ...


class ProcessorRegistry:
    """Maps task types to their processor. One processor per type."""

    def __init__(self) -> None:
        self._processors: dict[TaskType, TaskProcessor] = {}

    def register(self, processor: TaskProcessor, *, replace: bool = False) -> None:
        """Register ``processor`` for its ``task_type``.

        Raises:
            ValueError: If the type already has a processor and ``replace`` is False.
        """
        task_type = TaskType(processor.task_type)
        if task_type in self._processors and not replace:
            raise ValueError(f"Processor already registered for {task_type.value}")
        self._processors[task_type] = processor
        logger.info(f"Registered processor {type(processor).__name__} for {task_type.value}")

    def get(self, task_type: TaskType) -> TaskProcessor | None:
        return self._processors.get(task_type)

    def has(self, task_type: TaskType) -> bool:
        return task_type in self._processors

    def types(self) -> list[TaskType]:
        return list(self._processors)

    def __iter__(self) -> Iterator[TaskProcessor]:
        return iter(self._processors.values())

    def __len__(self) -> int:
        return len(self._processors)


__all__ = ["ProcessorRegistry", "TaskProcessor"]
