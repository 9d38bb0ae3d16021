"""
Publish/subscribe bus for realtime events.

Delivery is best-effort and at-most-once: nothing is buffered for channels
without a live subscriber and publish failures are logged, never raised.
Clients reconcile through the request/response API after reconnecting.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import (
    TYPE_CHECKING,
    AsyncContextManager,
    AsyncIterator,
    Dict,
    Iterable,
    Optional,
    Set,
)

from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis

from market_chat.models.api.realtime import RealtimeEvent

if TYPE_CHECKING:
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000


class Subscription(ABC):
    """A live subscription to one or more channels."""

    def __init__(self) -> None:
        self.channels: Set[str] = set()
        self._queue: "asyncio.Queue[RealtimeEvent]" = asyncio.Queue(
            maxsize=SUBSCRIBER_QUEUE_SIZE
        )

    async def next_event(self, timeout: float) -> Optional[RealtimeEvent]:
        """Wait up to ``timeout`` seconds for an event; None on timeout."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def _deliver(self, event: RealtimeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Subscriber queue full, dropping %s event", event.type)

    @abstractmethod
    async def add_channels(self, channels: Iterable[str]) -> None:
        """Start receiving events on additional channels."""


class EventBus(ABC):
    """Fan-out of events to channel subscribers."""

    @abstractmethod
    async def publish(self, event: RealtimeEvent) -> int:
        """Publish to ``event.scope_id``; returns the receiver count, 0 on failure."""

    @abstractmethod
    def subscribe(self, channels: Iterable[str]) -> AsyncContextManager[Subscription]:
        """Subscribe to ``channels`` for the lifetime of the context."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class _MemorySubscription(Subscription):
    def __init__(self, bus: "InMemoryEventBus") -> None:
        super().__init__()
        self._bus = bus

    async def add_channels(self, channels: Iterable[str]) -> None:
        for channel in channels:
            if channel not in self.channels:
                self.channels.add(channel)
                self._bus._subscribers[channel].add(self)


class InMemoryEventBus(EventBus):
    """Single-process bus used when no Redis is configured, and in tests."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[_MemorySubscription]] = defaultdict(set)
        self.publish_count = 0

    async def publish(self, event: RealtimeEvent) -> int:
        receivers = list(self._subscribers.get(event.scope_id, ()))
        for subscription in receivers:
            subscription._deliver(event)
        self.publish_count += 1
        return len(receivers)

    @asynccontextmanager
    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Subscription]:
        subscription = _MemorySubscription(self)
        await subscription.add_channels(channels)
        try:
            yield subscription
        finally:
            for channel in subscription.channels:
                subscribers = self._subscribers.get(channel)
                if subscribers is None:
                    continue
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscribers[channel]


class _RedisSubscription(Subscription):
    def __init__(self, pubsub: "PubSub") -> None:
        super().__init__()
        self._pubsub = pubsub

    async def add_channels(self, channels: Iterable[str]) -> None:
        new_channels = [c for c in channels if c not in self.channels]
        if new_channels:
            await self._pubsub.subscribe(*new_channels)
            self.channels.update(new_channels)

    async def read_forever(self) -> None:
        """Forward pubsub messages into the local queue until cancelled."""
        while True:
            if not self.channels:
                await asyncio.sleep(0.1)
                continue
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message is None or message.get("type") != "message":
                continue
            try:
                self._deliver(RealtimeEvent.model_validate_json(message["data"]))
            except PydanticValidationError as e:
                logger.warning("Invalid event on %s: %s", message.get("channel"), e)


class RedisEventBus(EventBus):
    """Bus backed by Redis pub/sub, shared by every worker process."""

    def __init__(self, redis: "Redis[str]"):
        self._redis = redis
        self.publish_count = 0
        self.error_count = 0

    async def publish(self, event: RealtimeEvent) -> int:
        try:
            receivers: int = await self._redis.publish(
                event.scope_id, event.model_dump_json()
            )
            self.publish_count += 1
            return receivers
        except Exception as e:
            self.error_count += 1
            logger.error(
                "Failed to publish %s to %s: %s", event.type, event.scope_id, e
            )
            return 0

    @asynccontextmanager
    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Subscription]:
        pubsub = self._redis.pubsub()
        subscription = _RedisSubscription(pubsub)
        await subscription.add_channels(channels)
        logger.info("Subscribed to %s", sorted(subscription.channels))
        reader = asyncio.create_task(subscription.read_forever())
        try:
            yield subscription
        finally:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Subscription reader failed: %s", e)
            if subscription.channels:
                await pubsub.unsubscribe(*subscription.channels)
            await pubsub.aclose()
            logger.info("Unsubscribed from %s", sorted(subscription.channels))

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.warning("Redis bus ping failed: %s", e)
            return False

    async def close(self) -> None:
        await self._redis.aclose()
