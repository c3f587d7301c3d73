"""Realtime fan-out of settlement results.

The websocket gateway subscribes to ``{prefix}:{room}`` channels and relays
each message to the sockets in that room.
"""
import json
import logging
from typing import Any, Protocol

import redis

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def publish(self, event: str, room: str, payload: Any) -> None: ...


class RedisNotifier:
    def __init__(self, client: "redis.Redis", prefix: str = "tablepay"):
        self._client = client
        self._prefix = prefix

    def channel(self, room: str) -> str:
        return f"{self._prefix}:{room}"

    def publish(self, event: str, room: str, payload: Any) -> None:
        message = json.dumps({"event": event, "room": room, "payload": payload}, default=str)
        try:
            self._client.publish(self.channel(room), message)
        except redis.RedisError:
            # the settlement is already committed; clients resync on reconnect
            logger.exception("realtime publish failed event=%s room=%s", event, room)


class LogNotifier:
    """Used when no Redis is configured (local dev)."""

    def publish(self, event: str, room: str, payload: Any) -> None:
        logger.info("realtime event=%s room=%s items=%s", event, room,
                    len(payload) if isinstance(payload, list) else 1)


def build_notifier(settings) -> Notifier:
    if not settings.REDIS_URL:
        return LogNotifier()
    return RedisNotifier(redis.Redis.from_url(settings.REDIS_URL), prefix=settings.REALTIME_CHANNEL_PREFIX)
