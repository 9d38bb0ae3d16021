from unittest.mock import AsyncMock, MagicMock

import pytest

from market_chat.cache import MemoryCache
from market_chat.models.api.conversations import (
    ConversationResponse,
    ConversationStatus,
)
from market_chat.models.api.messages import MessageResponse, MessageType
from market_chat.models.api.realtime import (
    EventType,
    RealtimeEvent,
    conversation_channel,
    user_channel,
)
from market_chat.realtime.broadcaster import Broadcaster, typing_key
from market_chat.realtime.bus import InMemoryEventBus, RedisEventBus


def conversation() -> ConversationResponse:
    return ConversationResponse(
        id=5,
        article_id=42,
        buyer_id=2,
        seller_id=1,
        status=ConversationStatus.ACTIVE,
        created_at="2026-01-01T00:00:00Z",
    )


def message(sender_id: int = 2) -> MessageResponse:
    return MessageResponse(
        id=9,
        conversation_id=5,
        sender_id=sender_id,
        content="Hello",
        message_type=MessageType.TEXT,
        created_at="2026-01-01T00:00:00Z",
    )


class TestInMemoryEventBus:
    @pytest.mark.asyncio
    async def test_publish_reaches_channel_subscribers_only(self) -> None:
        bus = InMemoryEventBus()
        event = RealtimeEvent(type=EventType.NEW_MESSAGE, scope_id="conversation:1")

        async with bus.subscribe(["conversation:1"]) as listening:
            async with bus.subscribe(["conversation:2"]) as other:
                assert await bus.publish(event) == 1
                received = await listening.next_event(timeout=0.5)
                assert await other.next_event(timeout=0.05) is None

        assert received == event

    @pytest.mark.asyncio
    async def test_no_buffering_without_subscribers(self) -> None:
        """Test that events published before subscribing are never delivered."""
        bus = InMemoryEventBus()
        event = RealtimeEvent(type=EventType.NEW_MESSAGE, scope_id="user:1")

        assert await bus.publish(event) == 0
        async with bus.subscribe(["user:1"]) as subscription:
            assert await subscription.next_event(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_add_channels_and_cleanup(self) -> None:
        bus = InMemoryEventBus()

        async with bus.subscribe(["user:1"]) as subscription:
            await subscription.add_channels(["conversation:3"])
            event = RealtimeEvent(
                type=EventType.TYPING_STATUS, scope_id="conversation:3"
            )
            await bus.publish(event)
            assert await subscription.next_event(timeout=0.5) == event

        assert await bus.publish(event) == 0


class TestRedisEventBus:
    @pytest.mark.asyncio
    async def test_publish_serializes_event(self) -> None:
        redis = MagicMock()
        redis.publish = AsyncMock(return_value=2)
        bus = RedisEventBus(redis)
        event = RealtimeEvent(
            type=EventType.NEW_MESSAGE, scope_id="conversation:1", payload={"a": 1}
        )

        assert await bus.publish(event) == 2

        channel, data = redis.publish.call_args.args
        assert channel == "conversation:1"
        assert RealtimeEvent.model_validate_json(data) == event

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self) -> None:
        """Test that a broken Redis never fails the caller's request."""
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        bus = RedisEventBus(redis)

        event = RealtimeEvent(type=EventType.NEW_MESSAGE, scope_id="user:1")
        assert await bus.publish(event) == 0
        assert bus.error_count == 1

    @pytest.mark.asyncio
    async def test_ping_failure_reports_false(self) -> None:
        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=ConnectionError("redis down"))

        assert await RedisEventBus(redis).ping() is False


class TestBroadcaster:
    @pytest.mark.asyncio
    async def test_new_message_fans_out_to_recipient(self) -> None:
        """Test conversation and recipient channels get the message, sender's not."""
        bus = InMemoryEventBus()
        broadcaster = Broadcaster(bus, MemoryCache(), typing_ttl=10)
        channels = [conversation_channel(5), user_channel(1), user_channel(2)]

        async with bus.subscribe(channels[:1]) as room:
            async with bus.subscribe(channels[1:2]) as seller:
                async with bus.subscribe(channels[2:]) as buyer:
                    await broadcaster.new_message(conversation(), message(sender_id=2))
                    room_event = await room.next_event(timeout=0.5)
                    seller_event = await seller.next_event(timeout=0.5)
                    assert await buyer.next_event(timeout=0.05) is None

        assert room_event is not None
        assert room_event.payload["message"]["id"] == 9
        assert seller_event is not None
        assert seller_event.payload["conversation_id"] == 5

    @pytest.mark.asyncio
    async def test_typing_marker_and_event(self) -> None:
        bus = InMemoryEventBus()
        cache = MemoryCache()
        broadcaster = Broadcaster(bus, cache, typing_ttl=10)

        async with bus.subscribe([conversation_channel(5)]) as room:
            await broadcaster.set_typing(5, 2, True)
            started = await room.next_event(timeout=0.5)
            await broadcaster.set_typing(5, 2, False)
            stopped = await room.next_event(timeout=0.5)

        assert started is not None and started.payload["is_typing"] is True
        assert started.payload["expires_at"] is not None
        assert stopped is not None and stopped.payload["expires_at"] is None
        assert await cache.get(typing_key(5, 2)) is None

    @pytest.mark.asyncio
    async def test_typing_users_per_conversation(self) -> None:
        broadcaster = Broadcaster(InMemoryEventBus(), MemoryCache(), typing_ttl=10)

        await broadcaster.set_typing(5, 2, True)
        await broadcaster.set_typing(5, 1, True)
        await broadcaster.set_typing(50, 3, True)

        assert await broadcaster.typing_users(5) == [1, 2]
        assert await broadcaster.typing_users(50) == [3]

    @pytest.mark.asyncio
    async def test_publish_error_is_logged_not_raised(self) -> None:
        bus = MagicMock()
        bus.publish = AsyncMock(side_effect=RuntimeError("boom"))
        broadcaster = Broadcaster(bus, MemoryCache(), typing_ttl=10)

        assert await broadcaster.publish(EventType.NOTIFICATION, "user:1", {}) == 0

    @pytest.mark.asyncio
    async def test_user_status_reaches_each_conversation(self) -> None:
        bus = InMemoryEventBus()
        broadcaster = Broadcaster(bus, MemoryCache(), typing_ttl=10)

        async with bus.subscribe(
            [conversation_channel(1), conversation_channel(2)]
        ) as subscription:
            await broadcaster.user_status(7, True, [1, 2])
            events = [await subscription.next_event(timeout=0.5) for _ in range(2)]

        assert {e.scope_id for e in events if e} == {"conversation:1", "conversation:2"}
