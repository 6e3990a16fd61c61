"""In-process publish/subscribe used to fan security events out to listeners."""

from __future__ import annotations

import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Union

from redis.asyncio import Redis
from redis.exceptions import RedisError

from account_security.utils.redis_client import redis_key

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        if handler not in self._handlers[event_name]:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        handlers = self._handlers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscribers(self, event_name: str) -> list[Handler]:
        return list(self._handlers.get(event_name, ()))

    async def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        """Deliver to every handler; returns how many handlers succeeded."""
        delivered = 0
        for handler in self.subscribers(event_name):
            try:
                result = handler(event_name, payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception("Event handler failed for %s", event_name)
        return delivered

    def clear(self) -> None:
        self._handlers.clear()


class RedisEventForwarder:
    """Republishes bus events on ``security:<event_name>`` Redis channels."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @staticmethod
    def channel_for(event_name: str) -> str:
        return redis_key(event_name)

    async def __call__(self, event_name: str, payload: dict[str, Any]) -> None:
        try:
            await self._redis.publish(self.channel_for(event_name), json.dumps(payload, default=str))
        except RedisError as exc:
            logger.warning("Event forward failed for %s: %s", event_name, exc)

    def attach(self, bus: EventBus, event_names: list[str]) -> None:
        for name in event_names:
            bus.subscribe(name, self)


_bus = EventBus()


def get_event_bus() -> EventBus:
    return _bus
