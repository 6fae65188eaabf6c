"""Notification channel for run state changes.

The engine calls ``publish(flow_id, event_type, payload)`` after every
transition. Publishing is best-effort: a failure is logged and never
affects the run.

Backends:
- ``WebSocketPublisher``: pushes straight to observers connected to this process.
- ``RedisPublisher``: publishes on ``<prefix>:flow:<flow_id>``; the API process
  relays those messages to its WebSocket observers (``RedisRelay``). Used when
  runs are processed by Celery workers.
- ``NullPublisher``: drops everything.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis

from app.config import Settings

logger = logging.getLogger(__name__)


def build_message(flow_id: str, event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": event_type,
        "flow_id": flow_id,
        "data": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class NotificationPublisher(ABC):
    """Abstract base for notification publishers."""

    @abstractmethod
    async def publish(self, flow_id: str, event_type: str, payload: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        return None


class NullPublisher(NotificationPublisher):
    async def publish(self, flow_id: str, event_type: str, payload: dict[str, Any]) -> None:
        return None


class WebSocketPublisher(NotificationPublisher):
    """Push to WebSocket observers held by a ``ConnectionManager``."""

    def __init__(self, connection_manager):
        self._manager = connection_manager

    async def publish(self, flow_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._manager.send_to_flow(flow_id, build_message(flow_id, event_type, payload))
        except Exception as e:
            logger.warning(f"WebSocket publish failed for flow {flow_id}: {e}")


class RedisPublisher(NotificationPublisher):
    """Publish run events on a Redis channel per flow."""

    def __init__(self, redis_url: str, channel_prefix: str = "campaign", client=None):
        self.channel_prefix = channel_prefix
        self._client = client or redis.from_url(redis_url, decode_responses=True)

    def channel_for(self, flow_id: str) -> str:
        return f"{self.channel_prefix}:flow:{flow_id}"

    async def publish(self, flow_id: str, event_type: str, payload: dict[str, Any]) -> None:
        message = build_message(flow_id, event_type, payload)
        try:
            await self._client.publish(self.channel_for(flow_id), json.dumps(message, default=str))
        except Exception as e:
            logger.warning(f"Redis publish failed for flow {flow_id}: {e}")

    async def close(self) -> None:
        await self._client.aclose()


class RedisRelay:
    """Forward Redis run events to this process's WebSocket observers."""

    def __init__(self, redis_url: str, connection_manager, channel_prefix: str = "campaign"):
        self._client = redis.from_url(redis_url, decode_responses=True)
        self._manager = connection_manager
        self._pattern = f"{channel_prefix}:flow:*"
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._listen())
        logger.info(f"Redis relay subscribed to {self._pattern}")

    async def _listen(self) -> None:
        pubsub = self._client.pubsub()
        await pubsub.psubscribe(self._pattern)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                try:
                    body = json.loads(message["data"])
                    await self._manager.send_to_flow(body["flow_id"], body)
                except (ValueError, KeyError) as e:
                    logger.warning(f"Dropping malformed relay message: {e}")
        finally:
            await pubsub.aclose()

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.aclose()


def build_publisher(settings: Settings, connection_manager=None) -> NotificationPublisher:
    """Create the publisher selected by ``NOTIFICATION_BACKEND``."""
    backend = settings.NOTIFICATION_BACKEND
    if backend == "redis":
        return RedisPublisher(settings.REDIS_URL, settings.NOTIFICATION_CHANNEL_PREFIX)
    if backend == "websocket" and connection_manager is not None:
        return WebSocketPublisher(connection_manager)
    return NullPublisher()
