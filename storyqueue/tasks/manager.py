"""Scheduler loop that runs queued tasks through their processors.

The manager polls the store every ``poll_interval_seconds`` (and
immediately when woken), starts the highest-priority due tasks up to
``max_concurrent_tasks``, races each processor call against its type
timeout, and hands every outcome to ``TaskQueueService.complete_task``.

Usage:
    manager = TaskQueueManager(service)
    manager.register_processor(StoryGenerationProcessor(service, generator))
    await manager.start()
    ...
    await manager.stop()
"""

from __future__ import annotations

import asyncio
import logging

from storyqueue.errors import StoreError, TaskNotFoundError
from storyqueue.observability.logging import log_event, timed_operation
from storyqueue.tasks.models import Task, TaskResult
from storyqueue.tasks.processors import TaskProcessor
from storyqueue.tasks.service import TaskQueueService

logger = logging.getLogger(__name__)

# Loop timers run on the monotonic clock, queued_at on wall time; land just after it
WAKE_SLACK_SECONDS = 0.05


class TaskQueueManager:
    """Asyncio scheduler for one process.

    In-flight bookkeeping is local to this manager; several managers may
    share a store because every start goes through the store's atomic claim.

    Args:
        service: Queue service that owns the store, config and registry.
    """

    def __init__(self, service: TaskQueueService) -> None:
        self.service = service
        self.config = service.config
        self.registry = service.registry
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._wake_event = asyncio.Event()
        self._timers: set[asyncio.TimerHandle] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._running = False
        self._paused = False
        self._store_healthy = True
        self._tick_lock = asyncio.Lock()
        self._next_orphan_check = 0.0
        service.attach_scheduler(self)

    def register_processor(self, processor: TaskProcessor, *, replace: bool = False) -> None:
        self.registry.register(processor, replace=replace)
        self.wake()

    @property
    def in_flight(self) -> frozenset[str]:
        """Ids of tasks this manager is currently running."""
        return frozenset(self._in_flight)

    @property
    def is_running(self) -> bool:
        return self._running and self._loop_task is not None and not self._loop_task.done()

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def start(self) -> None:
        """Start the scheduler loop, requeueing orphaned RUNNING tasks first.

        Only tasks RUNNING longer than their type timeout plus
        ``orphan_grace_seconds`` are requeued, so starting next to a live
        manager on the same store leaves its runs alone.
        """
        if self._running:
            logger.warning("Task queue manager is already running")
            return

        self._running = True
        self._next_orphan_check = (
            asyncio.get_running_loop().time() + self.config.orphan_check_interval_seconds
        )
        if self.config.recover_on_start:
            try:
                await self.service.recover_orphaned_tasks(exclude=self.in_flight)
            except StoreError as e:
                logger.critical("Orphan recovery failed at startup: %s", e)

        self._loop_task = asyncio.create_task(self._loop(), name="storyqueue-scheduler")
        logger.info(
            "Task queue manager started (max_concurrent=%d, poll=%.1fs, types=%s)",
            self.config.max_concurrent_tasks,
            self.config.poll_interval_seconds,
            [t.value for t in self.registry.types()],
        )

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Stop scheduling and wait up to ``drain_timeout`` for running tasks.

        Runs still going after the timeout are cancelled; their tasks stay
        RUNNING in the store and are requeued by orphan recovery.
        """
        if not self._running:
            return

        self._running = False
        self._wake_event.set()
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        runs = list(self._in_flight.values())
        if runs:
            _, pending = await asyncio.wait(runs, timeout=drain_timeout)
            for run in pending:
                run.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("Cancelled %d task run(s) still active at shutdown", len(pending))
        self._in_flight.clear()
        logger.info("Task queue manager stopped")

    def pause(self) -> None:
        """Stop starting new tasks. Running tasks continue."""
        if not self._paused:
            logger.info("Pausing task queue manager")
            self._paused = True

    def resume(self) -> None:
        if self._paused:
            logger.info("Resuming task queue manager")
            self._paused = False
            self.wake()

    def wake(self, delay: float | None = None) -> None:
        """Trigger a tick now, or after ``delay`` seconds."""
        if delay is None or delay <= 0:
            self._wake_event.set()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._wake_event.set()
            return

        def fire() -> None:
            self._timers.discard(handle)
            self._wake_event.set()

        handle = loop.call_later(delay + WAKE_SLACK_SECONDS, fire)
        self._timers.add(handle)

    def release(self, task_id: str, *, cancel_run: bool = False) -> None:
        """Free the in-flight slot of ``task_id``, optionally cancelling its run."""
        run = self._in_flight.pop(task_id, None)
        if run is None:
            return
        if cancel_run and not run.done() and run is not asyncio.current_task():
            logger.info("Preempting running task %s", task_id)
            run.cancel()

    async def _loop(self) -> None:
        logger.debug("Scheduler loop started")
        while self._running:
            if not self._paused:
                try:
                    await self._recover_if_due()
                    await self.tick()
                except StoreError as e:
                    if self._store_healthy:
                        log_event(
                            logger,
                            "queue.store_unavailable",
                            level=logging.CRITICAL,
                            message=f"Task store unavailable, scheduling suspended: {e}",
                        )
                    self._store_healthy = False
                except Exception as e:
                    logger.exception(f"Error in scheduler loop: {e}")

            try:
                await asyncio.wait_for(
                    self._wake_event.wait(), timeout=self.config.poll_interval_seconds
                )
            except TimeoutError:
                pass
            self._wake_event.clear()
        logger.debug("Scheduler loop exited")

    async def _recover_if_due(self) -> None:
        now = asyncio.get_running_loop().time()
        if now < self._next_orphan_check:
            return
        self._next_orphan_check = now + self.config.orphan_check_interval_seconds
        await self.service.recover_orphaned_tasks(exclude=self.in_flight)

    async def tick(self) -> list[str]:
        """Start as many due tasks as capacity allows. Returns the started ids.

        Raises:
            StoreError: The store could not be queried.
        """
        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> list[str]:
        capacity = self.config.max_concurrent_tasks - len(self._in_flight)
        if capacity <= 0:
            return []
        task_types = self.registry.types()
        if not task_types:
            return []

        due = await self.service.list_due_tasks(task_types, capacity, exclude=self.in_flight)
        if not self._store_healthy:
            logger.warning("Task store reachable again, scheduling resumed")
            self._store_healthy = True

        started: list[str] = []
        for task in due:
            if len(self._in_flight) >= self.config.max_concurrent_tasks:
                break
            processor = self.registry.get(task.task_type)
            if processor is None:
                continue
            if not processor.validate_payload(task.payload):
                await self.service.reject_task(
                    task, f"Invalid payload for task type '{task.task_type.value}'"
                )
                continue

            claimed = await self.service.claim_task(task.id)
            if claimed is None:
                logger.debug("Lost claim for task %s to another worker", task.id)
                continue

            self._in_flight[claimed.id] = asyncio.create_task(
                self._run(claimed, processor), name=f"storyqueue-task-{claimed.id}"
            )
            started.append(claimed.id)
        return started

    async def _execute(self, task: Task, processor: TaskProcessor) -> TaskResult:
        timeout = self.config.timeout_for(task.task_type)
        with timed_operation(
            logger,
            "task.process",
            task_id=task.id,
            task_type=task.task_type.value,
            attempt=task.retry_count + 1,
        ) as ctx:
            try:
                result = await asyncio.wait_for(
                    processor.process(task.id, task.payload), timeout=timeout
                )
            except TimeoutError:
                result = TaskResult(success=False, error=f"Task timed out after {timeout:g}s")
            ctx["success"] = result.success
        return result

    async def _run(self, task: Task, processor: TaskProcessor) -> None:
        try:
            result = await self._execute(task, processor)
        except asyncio.CancelledError:
            logger.info("Run of task %s cancelled", task.id)
            raise
        except Exception as e:
            classification = self.service.classifier.classify_exception(e)
            result = TaskResult(
                success=False,
                error=str(e) or type(e).__name__,
                retryable=classification.retryable,
            )

        try:
            await self.service.complete_task(task.id, result, started_at=task.started_at)
        except TaskNotFoundError:
            logger.warning("Task %s disappeared before its result was stored", task.id)
        except StoreError as e:
            # Stays RUNNING in the store; orphan recovery requeues it
            logger.critical("Could not finalize task %s: %s", task.id, e)
        except Exception as e:
            logger.error("Result of task %s could not be stored: %s", task.id, e)
            await self._fail_unstorable(task, e)
        finally:
            if self._in_flight.get(task.id) is asyncio.current_task():
                del self._in_flight[task.id]

    async def _fail_unstorable(self, task: Task, error: Exception) -> None:
        """Fail a task whose result the store rejected so it cannot run again."""
        result = TaskResult(
            success=False,
            error=f"Result could not be stored: {error}",
            retryable=False,
        )
        try:
            await self.service.complete_task(task.id, result, started_at=task.started_at)
        except Exception as e:
            logger.critical("Could not mark task %s failed: %s", task.id, e)


__all__ = ["TaskQueueManager"]
