"""Tests for notification sinks and queue wiring."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from storyqueue.config import NotificationConfig, StoryQueueConfig
from storyqueue.tasks.models import EventType, TaskEvent, TaskType
from storyqueue.tasks.notifications import (
    FanoutNotificationSink,
    NotificationSink,
    PollingNotificationSink,
    WebSocketNotificationSink,
)
from storyqueue.tasks.runtime import build_task_queue
from storyqueue.tasks.sqlite_store import SQLiteTaskStore
from storyqueue.tasks.store import InMemoryTaskStore
from tests.conftest import EPOCH, FakeClock, FakeProcessor, RecordingSink, make_config


def make_event(
    task_id: str = "t1",
    owner_id: str = "u1",
    sequence: int = 1,
    offset: float = 0,
    event_type: EventType = EventType.STATUS,
) -> TaskEvent:
    return TaskEvent(
        task_id=task_id,
        owner_id=owner_id,
        event_type=event_type,
        data={"n": sequence},
        timestamp=EPOCH + timedelta(seconds=offset),
        sequence=sequence,
    )


class FakeWebSocket:
    """Minimal stand-in for a FastAPI WebSocket."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.accepted = False
        self.client_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


class TestPollingSink:
    """Tests for the bounded polling buffer."""

    @pytest.mark.asyncio
    async def test_events_by_task_and_owner(self, clock: FakeClock) -> None:
        """Test that events are indexed per task and per owner."""
        sink = PollingNotificationSink(clock=clock)
        await sink.publish(make_event("t1", "u1", 1))
        await sink.publish(make_event("t2", "u1", 2))
        await sink.publish(make_event("t3", "u2", 3))

        assert [e["sequence"] for e in sink.get_task_events("t1")] == [1]
        assert [e["sequence"] for e in sink.get_owner_events("u1")] == [1, 2]
        assert sink.get_task_events("unknown") == []
        assert sink.stats() == {"tasks": 3, "owners": 2, "events": 3, "system_messages": 0}

    @pytest.mark.asyncio
    async def test_since_filter(self, clock: FakeClock) -> None:
        """Test that only events newer than ``since`` are returned."""
        sink = PollingNotificationSink(clock=clock)
        for n in range(3):
            await sink.publish(make_event(sequence=n, offset=n))

        newer = sink.get_task_events("t1", since=EPOCH)
        assert [e["sequence"] for e in newer] == [1, 2]

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self, clock: FakeClock) -> None:
        """Test that only the most recent events per task are kept."""
        sink = PollingNotificationSink(NotificationConfig(max_events_per_task=3), clock=clock)
        for n in range(5):
            await sink.publish(make_event(sequence=n))

        assert [e["sequence"] for e in sink.get_task_events("t1")] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_retention(self, clock: FakeClock) -> None:
        """Test that events older than the retention window are purged."""
        sink = PollingNotificationSink(NotificationConfig(event_retention_hours=1), clock=clock)
        await sink.publish(make_event("old", sequence=1))
        sink.add_system_message("maintenance at noon", level="warning")

        clock.advance(2 * 3600)
        await sink.publish(make_event("new", sequence=2, offset=2 * 3600))

        assert sink.get_task_events("old") == []
        assert [e["sequence"] for e in sink.get_owner_events("u1")] == [2]
        assert sink.get_system_messages() == []

    @pytest.mark.asyncio
    async def test_publish_trims_only_touched_buffers(self, clock: FakeClock) -> None:
        """Test that stale buffers of other tasks wait for the periodic sweep."""
        config = NotificationConfig(event_retention_hours=1, purge_interval_seconds=6 * 3600)
        sink = PollingNotificationSink(config, clock=clock)
        await sink.publish(make_event("old", "u1", sequence=1))

        clock.advance(2 * 3600)
        await sink.publish(make_event("new", "u2", sequence=2, offset=2 * 3600))
        assert len(sink.get_task_events("old")) == 1

        await sink.publish(make_event("old", "u1", sequence=3, offset=2 * 3600))
        assert [e["sequence"] for e in sink.get_task_events("old")] == [3]
        assert [e["sequence"] for e in sink.get_owner_events("u1")] == [3]

    @pytest.mark.asyncio
    async def test_periodic_sweep_purges_everything(self, clock: FakeClock) -> None:
        """Test that a publish after the purge interval sweeps every buffer."""
        config = NotificationConfig(event_retention_hours=1, purge_interval_seconds=3600)
        sink = PollingNotificationSink(config, clock=clock)
        await sink.publish(make_event("old", "u1", sequence=1))

        clock.advance(2 * 3600)
        await sink.publish(make_event("new", "u2", sequence=2, offset=2 * 3600))

        assert sink.get_task_events("old") == []
        assert sink.stats()["tasks"] == 1

    def test_system_messages(self, clock: FakeClock) -> None:
        """Test system-wide messages."""
        sink = PollingNotificationSink(NotificationConfig(max_system_messages=2), clock=clock)
        for text in ("one", "two", "three"):
            sink.add_system_message(text)

        messages = sink.get_system_messages()
        assert [m["message"] for m in messages] == ["two", "three"]
        assert messages[0]["level"] == "info"
        assert messages[0]["timestamp"] == EPOCH.isoformat()


class TestWebSocketSink:
    """Tests for WebSocket push delivery."""

    @pytest.mark.asyncio
    async def test_owner_receives_own_events(self) -> None:
        """Test routing by owner."""
        sink = WebSocketNotificationSink()
        mine, theirs = FakeWebSocket(), FakeWebSocket()
        await sink.connect(mine, owner_id="u1")  # type: ignore[arg-type]
        await sink.connect(theirs, owner_id="u2")  # type: ignore[arg-type]
        assert mine.accepted
        assert sink.active_connections == 2

        await sink.publish(make_event(owner_id="u1"))

        assert len(mine.sent) == 1
        assert mine.sent[0]["type"] == "task_update"
        assert mine.sent[0]["data"]["task_id"] == "t1"
        assert theirs.sent == []

    @pytest.mark.asyncio
    async def test_task_subscription_and_admin(self) -> None:
        """Test explicit task subscriptions and admin listeners."""
        sink = WebSocketNotificationSink()
        watcher, admin = FakeWebSocket(), FakeWebSocket()
        client = await sink.connect(watcher, owner_id="u2")  # type: ignore[arg-type]
        await sink.connect(admin, owner_id="ops", admin=True)  # type: ignore[arg-type]

        assert await sink.subscribe_task(client.client_id, "t1") is True
        await sink.publish(make_event("t1", owner_id="u1"))
        await sink.publish(make_event("t9", owner_id="u1"))

        assert [m["data"]["task_id"] for m in watcher.sent] == ["t1"]
        assert [m["data"]["task_id"] for m in admin.sent] == ["t1", "t9"]

        await sink.unsubscribe_task(client.client_id, "t1")
        await sink.publish(make_event("t1", owner_id="u1", sequence=2))
        assert len(watcher.sent) == 1

    @pytest.mark.asyncio
    async def test_subscribe_unknown_client(self) -> None:
        """Test that subscriptions need a connected client."""
        sink = WebSocketNotificationSink()
        assert await sink.subscribe_task("nobody", "t1") is False

    @pytest.mark.asyncio
    async def test_failed_clients_are_dropped(self) -> None:
        """Test that broken or closed sockets are removed and others still served."""
        sink = WebSocketNotificationSink()
        good, broken, closed = FakeWebSocket(), FakeWebSocket(fail=True), FakeWebSocket()
        closed.client_state = WebSocketState.DISCONNECTED
        for ws in (good, broken, closed):
            await sink.connect(ws, owner_id="u1")  # type: ignore[arg-type]

        await sink.publish(make_event())

        assert len(good.sent) == 1
        assert sink.active_connections == 1

    @pytest.mark.asyncio
    async def test_disconnect(self) -> None:
        """Test that disconnected clients receive nothing."""
        sink = WebSocketNotificationSink()
        ws = FakeWebSocket()
        client = await sink.connect(ws, owner_id="u1", accept=False)  # type: ignore[arg-type]
        assert ws.accepted is False

        await sink.disconnect(client.client_id)
        await sink.publish(make_event())
        assert ws.sent == []
        assert sink.active_connections == 0

    @pytest.mark.asyncio
    async def test_is_owner_connected(self) -> None:
        sink = WebSocketNotificationSink()
        client = await sink.connect(FakeWebSocket(), owner_id="u1")  # type: ignore[arg-type]
        assert sink.is_owner_connected("u1")
        assert not sink.is_owner_connected("u2")

        await sink.disconnect(client.client_id)
        assert not sink.is_owner_connected("u1")

    @pytest.mark.asyncio
    async def test_broadcast_system_message(self) -> None:
        """Test that system notices reach every socket regardless of owner."""
        sink = WebSocketNotificationSink()
        first, second, broken = FakeWebSocket(), FakeWebSocket(), FakeWebSocket(fail=True)
        await sink.connect(first, owner_id="u1")  # type: ignore[arg-type]
        await sink.connect(second, owner_id="u2")  # type: ignore[arg-type]
        await sink.connect(broken, owner_id="u3")  # type: ignore[arg-type]

        delivered = await sink.broadcast_system_message("maintenance at noon", level="warning")

        assert delivered == 2
        assert sink.active_connections == 2
        for ws in (first, second):
            (message,) = ws.sent
            assert message["type"] == "system_message"
            assert message["data"]["message"] == "maintenance at noon"
            assert message["data"]["level"] == "warning"

    @pytest.mark.asyncio
    async def test_broadcast_without_clients(self) -> None:
        assert await WebSocketNotificationSink().broadcast_system_message("hello") == 0


class TestFanoutSink:
    """Tests for fan-out delivery."""

    @pytest.mark.asyncio
    async def test_isolates_failures(self) -> None:
        """Test that one failing sink does not block the others."""

        class BrokenSink:
            async def publish(self, event: TaskEvent) -> None:
                raise RuntimeError("down")

        first, second = RecordingSink(), RecordingSink()
        fanout = FanoutNotificationSink(first, BrokenSink())
        fanout.add(second)

        await fanout.publish(make_event())
        assert len(first.events) == 1
        assert len(second.events) == 1

    def test_sinks_satisfy_protocol(self) -> None:
        """Test that every sink implements NotificationSink."""
        for sink in (
            PollingNotificationSink(),
            WebSocketNotificationSink(),
            FanoutNotificationSink(),
            RecordingSink(),
        ):
            assert isinstance(sink, NotificationSink)


class TestRuntime:
    """Tests for build_task_queue wiring."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_events_reach_polling_and_push(self) -> None:
        """Test that a wired queue delivers events to both channels."""
        config = StoryQueueConfig(queue=make_config())
        queue = build_task_queue(config, store=InMemoryTaskStore())
        queue.register_processor(FakeProcessor())
        ws = FakeWebSocket()
        await queue.push.connect(ws, owner_id="u1")  # type: ignore[arg-type]

        async with queue:
            task_id = await queue.service.enqueue_task("u1", TaskType.EXPORT, {})
            for _ in range(200):
                events = queue.polling.get_task_events(task_id)
                if events and events[-1]["event_type"] == "completed":
                    break
                await asyncio.sleep(0.02)

        statuses = [e["event_type"] for e in queue.polling.get_task_events(task_id)]
        assert statuses[0] == "status"
        assert statuses[-1] == "completed"
        assert [m["data"]["event_type"] for m in ws.sent] == statuses
        assert not queue.manager.is_running

    def test_default_store_is_sqlite(self, tmp_path: Any) -> None:
        """Test that the default store is SQLite at the configured path."""
        config = StoryQueueConfig(database_path=str(tmp_path / "q.db"))
        queue = build_task_queue(config)
        assert isinstance(queue.store, SQLiteTaskStore)
        assert (tmp_path / "q.db").exists()
        queue.store.close()

    @pytest.mark.asyncio
    async def test_system_message_reaches_both_channels(self) -> None:
        """Test that a queue-level notice is buffered and pushed."""
        queue = build_task_queue(StoryQueueConfig(queue=make_config()), store=InMemoryTaskStore())
        ws = FakeWebSocket()
        await queue.push.connect(ws, owner_id="u1")  # type: ignore[arg-type]

        assert await queue.broadcast_system_message("deploy in 5 minutes") == 1

        assert [m["message"] for m in queue.polling.get_system_messages()] == [
            "deploy in 5 minutes"
        ]
        assert ws.sent[0]["type"] == "system_message"
