"""Typed helpers that publish realtime events to conversation and user channels."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from market_chat.cache import CacheBackend
from market_chat.models.api.conversations import ConversationResponse
from market_chat.models.api.messages import MessageResponse, ReactionGroup
from market_chat.models.api.realtime import (
    EventType,
    RealtimeEvent,
    conversation_channel,
    user_channel,
)
from market_chat.realtime.bus import EventBus

logger = logging.getLogger(__name__)


def typing_key(conversation_id: int, user_id: Optional[int] = None) -> str:
    prefix = f"typing:{conversation_id}:"
    return prefix if user_id is None else f"{prefix}{user_id}"


class Broadcaster:
    """Publishes events strictly after the triggering write has committed."""

    def __init__(self, bus: EventBus, cache: CacheBackend, typing_ttl: int):
        self.bus = bus
        self.cache = cache
        self.typing_ttl = typing_ttl

    async def publish(
        self, event_type: EventType, channel: str, payload: Dict[str, Any]
    ) -> int:
        event = RealtimeEvent(type=event_type, scope_id=channel, payload=payload)
        try:
            return await self.bus.publish(event)
        except Exception as e:
            logger.error("Failed to publish %s to %s: %s", event_type, channel, e)
            return 0

    async def new_message(
        self, conversation: ConversationResponse, message: MessageResponse
    ) -> None:
        """Fan a new message out to the conversation and to each recipient's channel."""
        payload = {"message": message.model_dump(mode="json")}
        await self.publish(
            EventType.NEW_MESSAGE, conversation_channel(conversation.id), payload
        )
        for user_id in (conversation.buyer_id, conversation.seller_id):
            if user_id == message.sender_id:
                continue
            await self.publish(
                EventType.NEW_MESSAGE,
                user_channel(user_id),
                {**payload, "conversation_id": conversation.id},
            )

    async def set_typing(
        self, conversation_id: int, user_id: int, is_typing: bool
    ) -> None:
        """Record or clear a typing marker and announce it.

        A marker not renewed within the TTL lapses on its own, so readers treat
        the user as no longer typing even if no stop event ever arrives.
        """
        key = typing_key(conversation_id, user_id)
        expires_at = None
        try:
            if is_typing:
                await self.cache.set(key, "1", ttl=self.typing_ttl)
            else:
                await self.cache.delete(key)
        except Exception as e:
            logger.warning("Failed to update typing marker %s: %s", key, e)
        if is_typing:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.typing_ttl)

        await self.publish(
            EventType.TYPING_STATUS,
            conversation_channel(conversation_id),
            {
                "conversation_id": conversation_id,
                "user_id": user_id,
                "is_typing": is_typing,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )

    async def typing_users(self, conversation_id: int) -> List[int]:
        prefix = typing_key(conversation_id)
        try:
            keys = await self.cache.keys(prefix)
        except Exception as e:
            logger.warning(
                "Typing lookup for conversation %s failed: %s", conversation_id, e
            )
            return []
        return sorted(int(key[len(prefix):]) for key in keys)

    async def read_receipt(
        self,
        conversation_id: int,
        reader_id: int,
        message_ids: List[int],
        read_at: datetime,
    ) -> None:
        await self.publish(
            EventType.READ_RECEIPT,
            conversation_channel(conversation_id),
            {
                "conversation_id": conversation_id,
                "reader_id": reader_id,
                "message_ids": message_ids,
                "read_at": read_at.isoformat(),
            },
        )

    async def message_update(self, message: MessageResponse, action: str) -> None:
        await self.publish(
            EventType.MESSAGE_UPDATE,
            conversation_channel(message.conversation_id),
            {"action": action, "message": message.model_dump(mode="json")},
        )

    async def reaction_update(
        self,
        conversation_id: int,
        message_id: int,
        user_id: int,
        emoji: str,
        action: str,
        reactions: List[ReactionGroup],
    ) -> None:
        await self.publish(
            EventType.REACTION_UPDATE,
            conversation_channel(conversation_id),
            {
                "message_id": message_id,
                "user_id": user_id,
                "emoji": emoji,
                "action": action,
                "reactions": [r.model_dump() for r in reactions],
            },
        )

    async def user_status(
        self, user_id: int, is_online: bool, conversation_ids: Iterable[int]
    ) -> None:
        """Announce a presence change in every conversation the user belongs to."""
        payload = {
            "user_id": user_id,
            "is_online": is_online,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for conversation_id in conversation_ids:
            await self.publish(
                EventType.USER_STATUS, conversation_channel(conversation_id), payload
            )

    async def notification(self, user_id: int, payload: Dict[str, Any]) -> None:
        await self.publish(EventType.NOTIFICATION, user_channel(user_id), payload)
