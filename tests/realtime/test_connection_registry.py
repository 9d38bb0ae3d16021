from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_chat.cache import MemoryCache
from market_chat.models.api.realtime import (
    EventType,
    TransportKind,
    conversation_channel,
)
from market_chat.realtime.bus import InMemoryEventBus
from market_chat.realtime.connection_registry import ConnectionRegistry, presence_key
from market_chat.repositories.connection_repository import ConnectionRepository


class TestConnectionRegistry:
    """Integration tests for connection bookkeeping and presence."""

    @pytest.mark.asyncio
    async def test_register_marks_user_online(
        self, registry: ConnectionRegistry, cache: MemoryCache
    ) -> None:
        connection = await registry.register(
            3, TransportKind.WEBSOCKET, user_agent="pytest", ip_address="127.0.0.1"
        )

        assert connection.is_active is True
        assert connection.transport == TransportKind.WEBSOCKET
        assert await cache.exists(presence_key(3))
        presence = await registry.is_online(3)
        assert presence.is_online is True

    @pytest.mark.asyncio
    async def test_presence_survives_until_last_connection_closes(
        self, registry: ConnectionRegistry
    ) -> None:
        """Test that a user with two tabs stays online when one closes."""
        first = await registry.register(3, TransportKind.WEBSOCKET)
        second = await registry.register(3, TransportKind.SSE)

        assert await registry.unregister(first.connection_id) is True
        assert (await registry.is_online(3)).is_online is True

        assert await registry.unregister(second.connection_id) is True
        presence = await registry.is_online(3)
        assert presence.is_online is False
        assert presence.last_seen is not None

    @pytest.mark.asyncio
    async def test_unregister_unknown_or_twice(
        self, registry: ConnectionRegistry
    ) -> None:
        connection = await registry.register(3, TransportKind.SSE)

        assert await registry.unregister("missing") is False
        assert await registry.unregister(connection.connection_id) is True
        assert await registry.unregister(connection.connection_id) is False

    @pytest.mark.asyncio
    async def test_register_purges_stale_connections(
        self,
        registry: ConnectionRegistry,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """Test that connections without a recent heartbeat are deactivated."""
        long_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        async with session_factory() as db:
            await ConnectionRepository(db).create(
                3, "stale-conn", TransportKind.WEBSOCKET, connected_at=long_ago
            )
            await db.commit()

        await registry.register(3, TransportKind.WEBSOCKET)

        active = await registry.active_connections(3)
        assert len(active) == 1
        assert active[0].connection_id != "stale-conn"

    @pytest.mark.asyncio
    async def test_presence_expires_without_heartbeat(
        self, registry: ConnectionRegistry, cache: MemoryCache
    ) -> None:
        """Test that presence lapses when the marker is not renewed."""
        connection = await registry.register(3, TransportKind.WEBSOCKET)
        key = presence_key(3)
        value, _ = cache.cache[key]
        cache.cache[key] = (value, 0.0)

        assert (await registry.is_online(3)).is_online is False

        assert await registry.heartbeat(connection.connection_id) is True
        assert (await registry.is_online(3)).is_online is True

    @pytest.mark.asyncio
    async def test_heartbeat_for_closed_connection(
        self, registry: ConnectionRegistry
    ) -> None:
        connection = await registry.register(3, TransportKind.SSE)
        await registry.unregister(connection.connection_id)

        assert await registry.heartbeat(connection.connection_id) is False

    @pytest.mark.asyncio
    async def test_online_and_offline_announced(
        self,
        registry: ConnectionRegistry,
        bus: InMemoryEventBus,
        conversation_factory: Any,
    ) -> None:
        """Test status events on the user's conversations at first connect and last
        disconnect only."""
        conversation = await conversation_factory()
        channel = conversation_channel(conversation.id)

        async with bus.subscribe([channel]) as subscription:
            first = await registry.register(2, TransportKind.WEBSOCKET)
            online = await subscription.next_event(timeout=0.5)
            second = await registry.register(2, TransportKind.SSE)
            assert await subscription.next_event(timeout=0.05) is None

            await registry.unregister(first.connection_id)
            await registry.unregister(second.connection_id)
            offline = await subscription.next_event(timeout=0.5)

        assert online is not None and online.type == EventType.USER_STATUS
        assert online.payload == {
            "user_id": 2,
            "is_online": True,
            "timestamp": online.payload["timestamp"],
        }
        assert offline is not None and offline.payload["is_online"] is False

    @pytest.mark.asyncio
    async def test_stats(self, registry: ConnectionRegistry) -> None:
        await registry.register(3, TransportKind.WEBSOCKET)
        await registry.register(3, TransportKind.SSE)
        await registry.register(4, TransportKind.SSE)

        stats = await registry.stats()

        assert stats.active_connections == 3
        assert stats.online_users == 2
