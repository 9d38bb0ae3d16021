"""
Connection registry.

Tracks live WebSocket and SSE connections in the database and keeps a
renewable presence marker per user in the TTL cache. The marker, not the
connection rows, answers "is this user online"; rows only provide the
last-seen fallback and per-connection bookkeeping.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from market_chat.cache import CacheBackend
from market_chat.database import SessionFactory, session_scope
from market_chat.models.api.realtime import (
    ConnectionResponse,
    PresenceResponse,
    RegistryStats,
    TransportKind,
)
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.repositories.connection_repository import ConnectionRepository
from market_chat.repositories.conversation_repository import ConversationRepository

logger = logging.getLogger(__name__)


def presence_key(user_id: int) -> str:
    return f"presence:user:{user_id}"


class ConnectionRegistry:
    def __init__(
        self,
        session_factory: SessionFactory,
        cache: CacheBackend,
        broadcaster: Optional[Broadcaster] = None,
        presence_ttl: int = 300,
        stale_after: int = 300,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.broadcaster = broadcaster
        self.presence_ttl = presence_ttl
        self.stale_after = stale_after

    async def register(
        self,
        user_id: int,
        transport: TransportKind,
        connection_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ConnectionResponse:
        """Purge the user's stale connections, record this one and mark presence."""
        now = datetime.now(timezone.utc)
        connection_id = connection_id or uuid.uuid4().hex
        async with session_scope(self.session_factory) as db:
            repo = ConnectionRepository(db)
            purged = await repo.deactivate_stale(
                user_id, now - timedelta(seconds=self.stale_after)
            )
            connection = await repo.create(
                user_id,
                connection_id,
                transport,
                connected_at=now,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            await db.commit()

        was_online = await self._safe_exists(presence_key(user_id))
        await self._mark_present(user_id)
        logger.info(
            "Registered %s connection %s for user %s (purged %d stale)",
            transport.value,
            connection_id,
            user_id,
            purged,
        )
        if not was_online:
            await self._announce(user_id, True)
        return connection

    async def unregister(self, connection_id: str) -> bool:
        """Deactivate a connection; clears presence when it was the user's last."""
        async with session_scope(self.session_factory) as db:
            repo = ConnectionRepository(db)
            connection = await repo.get_by_connection_id(connection_id)
            if connection is None:
                return False
            changed = await repo.deactivate(connection_id)
            remaining = await repo.count_active_for_user(connection.user_id)
            await db.commit()

        logger.info(
            "Unregistered connection %s for user %s (%d remaining)",
            connection_id,
            connection.user_id,
            remaining,
        )
        if changed and remaining == 0:
            try:
                await self.cache.delete(presence_key(connection.user_id))
            except Exception as e:
                logger.warning(
                    "Failed to clear presence for %s: %s", connection.user_id, e
                )
            await self._announce(connection.user_id, False)
        return changed

    async def heartbeat(self, connection_id: str) -> bool:
        """Renew the connection's last ping and its user's presence marker."""
        async with session_scope(self.session_factory) as db:
            repo = ConnectionRepository(db)
            touched = await repo.touch(connection_id, datetime.now(timezone.utc))
            connection = (
                await repo.get_by_connection_id(connection_id) if touched else None
            )
            await db.commit()
        if connection is None:
            return False
        await self._mark_present(connection.user_id)
        return True

    async def is_online(self, user_id: int) -> PresenceResponse:
        if await self._safe_exists(presence_key(user_id)):
            return PresenceResponse(user_id=user_id, is_online=True)
        async with session_scope(self.session_factory) as db:
            last_seen = await ConnectionRepository(db).last_ping_for_user(user_id)
        return PresenceResponse(user_id=user_id, is_online=False, last_seen=last_seen)

    async def active_connections(self, user_id: int) -> List[ConnectionResponse]:
        async with session_scope(self.session_factory) as db:
            return await ConnectionRepository(db).active_for_user(user_id)

    async def stats(self) -> RegistryStats:
        async with session_scope(self.session_factory) as db:
            connections, users = await ConnectionRepository(db).totals()
        return RegistryStats(active_connections=connections, online_users=users)

    async def _mark_present(self, user_id: int) -> None:
        try:
            await self.cache.set(
                presence_key(user_id),
                datetime.now(timezone.utc).isoformat(),
                ttl=self.presence_ttl,
            )
        except Exception as e:
            logger.warning("Failed to mark user %s present: %s", user_id, e)

    async def _safe_exists(self, key: str) -> bool:
        try:
            return await self.cache.exists(key)
        except Exception as e:
            logger.warning("Presence lookup for %s failed: %s", key, e)
            return False

    async def _announce(self, user_id: int, is_online: bool) -> None:
        if self.broadcaster is None:
            return
        async with session_scope(self.session_factory) as db:
            conversation_ids = await ConversationRepository(db).ids_for_user(user_id)
        await self.broadcaster.user_status(user_id, is_online, conversation_ids)
