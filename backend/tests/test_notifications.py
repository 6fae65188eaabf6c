"""Tests for run notifications and the WebSocket connection manager."""

import json

import pytest

from api.websockets.connection_manager import ConnectionManager
from app.config import Settings
from notifications.publisher import (
    NullPublisher,
    RedisPublisher,
    WebSocketPublisher,
    build_message,
    build_publisher,
)


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.accepted = False
        self.fail = fail
        self.sent: list[str] = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(text)


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        self.closed = True


@pytest.mark.unit
class TestConnectionManager:
    async def test_send_to_flow_observers_only(self):
        manager = ConnectionManager()
        watching, other = FakeWebSocket(), FakeWebSocket()
        await manager.connect(watching, "flow-1")
        await manager.connect(other, "flow-2")

        delivered = await manager.send_to_flow("flow-1", {"type": "run.started"})

        assert delivered == 1
        assert watching.accepted is True
        assert json.loads(watching.sent[0]) == {"type": "run.started"}
        assert other.sent == []

    async def test_failed_connection_is_dropped(self):
        manager = ConnectionManager()
        good, broken = FakeWebSocket(), FakeWebSocket(fail=True)
        await manager.connect(good, "flow-1")
        await manager.connect(broken, "flow-1")

        delivered = await manager.send_to_flow("flow-1", {"type": "x"})

        assert delivered == 1
        assert manager.subscriber_count("flow-1") == 1

    async def test_disconnect(self):
        manager = ConnectionManager()
        ws = FakeWebSocket()
        await manager.connect(ws, "flow-1")
        await manager.disconnect(ws, "flow-1")

        assert manager.subscriber_count("flow-1") == 0
        assert await manager.send_to_flow("flow-1", {"type": "x"}) == 0


@pytest.mark.unit
class TestPublishers:
    def test_build_message(self):
        message = build_message("flow-1", "run.completed", {"run_id": "r-1"})

        assert message["type"] == "run.completed"
        assert message["flow_id"] == "flow-1"
        assert message["data"] == {"run_id": "r-1"}
        assert "timestamp" in message

    async def test_websocket_publisher(self):
        manager = ConnectionManager()
        ws = FakeWebSocket()
        await manager.connect(ws, "flow-1")

        await WebSocketPublisher(manager).publish("flow-1", "run.started", {"run_id": "r-1"})

        body = json.loads(ws.sent[0])
        assert body["type"] == "run.started"
        assert body["data"]["run_id"] == "r-1"

    async def test_redis_publisher_channel_per_flow(self):
        client = FakeRedis()
        publisher = RedisPublisher("redis://unused", channel_prefix="test", client=client)

        await publisher.publish("flow-1", "run.suspended", {"run_id": "r-1"})
        await publisher.close()

        channel, raw = client.published[0]
        assert channel == "test:flow:flow-1"
        assert json.loads(raw)["type"] == "run.suspended"
        assert client.closed is True

    async def test_redis_failure_is_swallowed(self):
        publisher = RedisPublisher("redis://unused", client=FakeRedis(fail=True))

        await publisher.publish("flow-1", "run.started", {})

    def test_build_publisher(self):
        manager = ConnectionManager()

        assert isinstance(build_publisher(Settings(NOTIFICATION_BACKEND="none"), manager), NullPublisher)
        assert isinstance(build_publisher(Settings(NOTIFICATION_BACKEND="websocket"), manager), WebSocketPublisher)
        assert isinstance(build_publisher(Settings(NOTIFICATION_BACKEND="websocket")), NullPublisher)
