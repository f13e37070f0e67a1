"""Notification sinks for task events.

The queue service only needs ``await sink.publish(event)``. Delivery is
pluggable:

- PollingNotificationSink: keeps the last N events per task and per owner
  (plus system-wide messages) for clients that poll.
- WebSocketNotificationSink: pushes events to connected WebSockets of the
  task owner, explicit task subscribers and admin listeners.
- FanoutNotificationSink: publishes to several sinks, isolating failures.

Usage:
    polling = PollingNotificationSink()
    push = WebSocketNotificationSink()
    sink = FanoutNotificationSink(polling, push)

    # in a FastAPI websocket route
    await push.connect(websocket, owner_id=user.id)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from storyqueue.config import NotificationConfig
from storyqueue.tasks.models import TaskEvent, utcnow

logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationSink(Protocol):
    """Receives every task event produced by the queue."""

    async def publish(self, event: TaskEvent) -> None: ...


class PollingNotificationSink:
    """Bounded in-memory event buffer for poll-based delivery.

    Events are kept per task and per owner, capped at
    ``max_events_per_task`` each and dropped once older than
    ``event_retention_hours``. A publish trims only the two buffers it
    touches; every buffer is swept at most once per
    ``purge_interval_seconds``.
    """

    def __init__(
        self,
        config: NotificationConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or NotificationConfig()
        self._clock = clock
        self._by_task: dict[str, deque[TaskEvent]] = {}
        self._by_owner: dict[str, deque[TaskEvent]] = {}
        self._system: deque[dict[str, Any]] = deque(maxlen=self._config.max_system_messages)
        self._next_purge = clock() + timedelta(seconds=self._config.purge_interval_seconds)

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self._config.event_retention_hours)

    def _buffer(self, buffers: dict[str, deque[TaskEvent]], key: str) -> deque[TaskEvent]:
        buffer = buffers.get(key)
        if buffer is None:
            buffer = deque(maxlen=self._config.max_events_per_task)
            buffers[key] = buffer
        return buffer

    @staticmethod
    def _trim(buffer: deque[TaskEvent], cutoff: datetime) -> int:
        removed = 0
        while buffer and buffer[0].timestamp < cutoff:
            buffer.popleft()
            removed += 1
        return removed

    async def publish(self, event: TaskEvent) -> None:
        now = self._clock()
        cutoff = now - self.retention
        for buffers, key in ((self._by_task, event.task_id), (self._by_owner, event.owner_id)):
            buffer = self._buffer(buffers, key)
            buffer.append(event)
            self._trim(buffer, cutoff)
        if now >= self._next_purge:
            self.purge_expired()

    def add_system_message(self, message: str, level: str = "info") -> None:
        """Record a system-wide message (maintenance notices and the like)."""
        self._system.append({"message": message, "level": level, "timestamp": self._clock()})

    def purge_expired(self) -> int:
        """Drop events and system messages older than the retention window."""
        now = self._clock()
        self._next_purge = now + timedelta(seconds=self._config.purge_interval_seconds)
        cutoff = now - self.retention
        removed = 0
        for buffers in (self._by_task, self._by_owner):
            for key in list(buffers):
                buffer = buffers[key]
                removed += self._trim(buffer, cutoff)
                if not buffer:
                    del buffers[key]
        while self._system and self._system[0]["timestamp"] < cutoff:
            self._system.popleft()
        return removed

    @staticmethod
    def _select(events: Iterable[TaskEvent], since: datetime | None) -> list[dict[str, Any]]:
        return [e.to_dict() for e in events if since is None or e.timestamp > since]

    def get_task_events(self, task_id: str, since: datetime | None = None) -> list[dict[str, Any]]:
        """Buffered events for one task, oldest first."""
        return self._select(self._by_task.get(task_id, ()), since)

    def get_owner_events(
        self, owner_id: str, since: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Buffered events across all of an owner's tasks, oldest first."""
        return self._select(self._by_owner.get(owner_id, ()), since)

    def get_system_messages(self, since: datetime | None = None) -> list[dict[str, Any]]:
        return [
            {**m, "timestamp": m["timestamp"].isoformat()}
            for m in self._system
            if since is None or m["timestamp"] > since
        ]

    def stats(self) -> dict[str, int]:
        return {
            "tasks": len(self._by_task),
            "owners": len(self._by_owner),
            "events": sum(len(b) for b in self._by_task.values()),
            "system_messages": len(self._system),
        }


@dataclass
class NotificationClient:
    """A connected WebSocket and what it listens to."""

    websocket: WebSocket
    client_id: str
    owner_id: str
    admin: bool = False
    task_ids: set[str] = field(default_factory=set)

    def wants(self, event: TaskEvent) -> bool:
        return self.admin or event.owner_id == self.owner_id or event.task_id in self.task_ids


class WebSocketNotificationSink:
    """Pushes task events to connected WebSockets.

    A client receives an event when it belongs to the task owner, has
    subscribed to the task, or was connected as an admin listener.
    Clients that fail to receive are dropped.
    """

    MESSAGE_TYPE = "task_update"
    SYSTEM_MESSAGE_TYPE = "system_message"

    def __init__(self) -> None:
        self._clients: dict[str, NotificationClient] = {}
        self._lock = asyncio.Lock()

    @property
    def active_connections(self) -> int:
        """Return count of active connections."""
        return len(self._clients)

    async def connect(
        self,
        websocket: WebSocket,
        owner_id: str,
        *,
        admin: bool = False,
        accept: bool = True,
    ) -> NotificationClient:
        """Register a socket for an owner. Accepts the handshake unless told otherwise."""
        if accept:
            await websocket.accept()
        client = NotificationClient(
            websocket=websocket,
            client_id=str(uuid.uuid4()),
            owner_id=owner_id,
            admin=admin,
        )
        async with self._lock:
            self._clients[client.client_id] = client
        logger.info("Notification client %s connected for owner %s", client.client_id, owner_id)
        return client

    def is_owner_connected(self, owner_id: str) -> bool:
        return any(c.owner_id == owner_id for c in self._clients.values())

    async def disconnect(self, client_id: str) -> None:
        async with self._lock:
            if self._clients.pop(client_id, None) is not None:
                logger.info("Notification client disconnected: %s", client_id)

    async def subscribe_task(self, client_id: str, task_id: str) -> bool:
        async with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                return False
            client.task_ids.add(task_id)
            return True

    async def unsubscribe_task(self, client_id: str, task_id: str) -> None:
        async with self._lock:
            client = self._clients.get(client_id)
            if client is not None:
                client.task_ids.discard(task_id)

    async def _send(self, client: NotificationClient, message: dict[str, Any]) -> bool:
        state = getattr(client.websocket, "client_state", WebSocketState.CONNECTED)
        if state != WebSocketState.CONNECTED:
            return False
        try:
            await client.websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning("Failed to push task event to %s: %s", client.client_id, e)
            return False

    async def publish(self, event: TaskEvent) -> None:
        async with self._lock:
            targets = [c for c in self._clients.values() if c.wants(event)]
        if not targets:
            return

        message = {"type": self.MESSAGE_TYPE, "data": event.to_dict()}
        await self._deliver(targets, message)

    async def broadcast_system_message(self, message: str, level: str = "info") -> int:
        """Send a system-wide notice to every connected socket. Returns the delivered count."""
        async with self._lock:
            targets = list(self._clients.values())
        if not targets:
            return 0
        payload = {
            "type": self.SYSTEM_MESSAGE_TYPE,
            "data": {"message": message, "level": level, "timestamp": utcnow().isoformat()},
        }
        return await self._deliver(targets, payload)

    async def _deliver(self, targets: list[NotificationClient], message: dict[str, Any]) -> int:
        results = await asyncio.gather(*[self._send(client, message) for client in targets])

        dead = [client.client_id for client, ok in zip(targets, results, strict=True) if not ok]
        if dead:
            async with self._lock:
                for client_id in dead:
                    self._clients.pop(client_id, None)
            logger.info("Dropped %d unreachable notification client(s)", len(dead))
        return len(targets) - len(dead)


class FanoutNotificationSink:
    """Publishes each event to every wrapped sink.

    One sink failing never prevents delivery to the others.
    """

    def __init__(self, *sinks: NotificationSink) -> None:
        self._sinks = list(sinks)

    def add(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    async def publish(self, event: TaskEvent) -> None:
        results = await asyncio.gather(
            *[sink.publish(event) for sink in self._sinks],
            return_exceptions=True,
        )
        for sink, outcome in zip(self._sinks, results, strict=True):
            if isinstance(outcome, Exception):
                logger.error(
                    "Notification sink %s failed for task %s: %s",
                    type(sink).__name__,
                    event.task_id,
                    outcome,
                )


__all__ = [
    "FanoutNotificationSink",
    "NotificationClient",
    "NotificationSink",
    "PollingNotificationSink",
    "WebSocketNotificationSink",
]
