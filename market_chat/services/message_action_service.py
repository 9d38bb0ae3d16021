from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from market_chat import config
from market_chat.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from market_chat.models.api.messages import (
    SYSTEM_SENDER_ID,
    DeliveryState,
    MarkManyReadResponse,
    MessageResponse,
    MessageType,
    ReactionGroup,
)
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.repositories.delivery_status_repository import (
    DeliveryStatusRepository,
)
from market_chat.repositories.message_repository import MessageRepository
from market_chat.repositories.reaction_repository import ReactionRepository
from market_chat.services.base_service import BaseService
from market_chat.services.content_sanitizer import sanitize_text

MAX_EMOJI_LENGTH = 32


class MessageActionService(BaseService):
    """Service for acting on existing messages: edit, delete, read, react."""

    def __init__(self, db: AsyncSession, broadcaster: Optional[Broadcaster] = None):
        super().__init__(db)
        self.broadcaster = broadcaster
        self.message_repo = MessageRepository(db)
        self.reaction_repo = ReactionRepository(db)
        self.delivery_repo = DeliveryStatusRepository(db)

    async def get_message(self, message_id: int, user_id: int) -> MessageResponse:
        """Load a message the caller can see through conversation membership."""
        message = await self.message_repo.get_by_id(message_id)
        if not message:
            raise NotFoundError(
                f"Message {message_id} not found", details={"message_id": message_id}
            )
        await self.require_participant(message.conversation_id, user_id)
        return message

    def _check_own_text_message(self, message: MessageResponse, user_id: int) -> None:
        if message.sender_id != user_id:
            raise PermissionDeniedError(
                "Only the sender can modify this message",
                details={"message_id": message.id},
            )
        if (
            message.sender_id == SYSTEM_SENDER_ID
            or message.message_type != MessageType.TEXT
            or message.system_message_type
        ):
            raise ValidationError(
                "Only text messages can be modified",
                details={"message_id": message.id},
            )

    async def edit(
        self, message_id: int, user_id: int, new_content: str
    ) -> MessageResponse:
        message = await self.get_message(message_id, user_id)
        self._check_own_text_message(message, user_id)
        if not new_content or not new_content.strip():
            raise ValidationError("Message content is required")
        if len(new_content) > config.MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message content exceeds {config.MAX_MESSAGE_LENGTH} characters"
            )
        content = sanitize_text(new_content)
        if not content:
            raise ValidationError("Message content is empty after sanitizing")

        async with self.transaction():
            await self.message_repo.edit_content(
                message_id, content, datetime.now(timezone.utc)
            )
            updated = await self.message_repo.get_by_id(message_id)

        if updated is None:
            raise NotFoundError(f"Message {message_id} not found")
        if self.broadcaster is not None:
            await self.broadcaster.message_update(updated, "edited")
        return updated

    async def soft_delete(self, message_id: int, user_id: int) -> MessageResponse:
        """Replace the message with a deletion marker; id and ordering are kept."""
        message = await self.get_message(message_id, user_id)
        self._check_own_text_message(message, user_id)

        async with self.transaction():
            await self.message_repo.soft_delete(
                message_id, datetime.now(timezone.utc)
            )
            updated = await self.message_repo.get_by_id(message_id)

        if updated is None:
            raise NotFoundError(f"Message {message_id} not found")
        if self.broadcaster is not None:
            await self.broadcaster.message_update(updated, "deleted")
        return updated

    async def mark_read(self, message_id: int, reader_id: int) -> MarkManyReadResponse:
        message = await self.get_message(message_id, reader_id)
        if message.sender_id == reader_id:
            raise ValidationError(
                "Cannot mark your own message as read",
                details={"message_id": message_id},
            )
        return await self.mark_many_read([message_id], reader_id)

    async def mark_many_read(
        self, message_ids: Sequence[int], reader_id: int
    ) -> MarkManyReadResponse:
        """
        Mark specific messages read on behalf of ``reader_id``:
        1. Check the reader participates in every touched conversation
        2. Flip unread messages the reader did not send, recompute counters
        3. Upgrade delivery status and publish read receipts after commit

        The reader's own messages are skipped, never marked.
        """
        messages = await self.message_repo.get_many(list(set(message_ids)))
        conversations = {}
        for conversation_id in sorted({m.conversation_id for m in messages}):
            conversations[conversation_id] = await self.require_participant(
                conversation_id, reader_id
            )

        now = datetime.now(timezone.utc)
        flipped: Dict[int, List[int]] = defaultdict(list)
        async with self.transaction():
            pairs = await self.message_repo.mark_ids_read(
                [m.id for m in messages], reader_id, now
            )
            for message_id, conversation_id in pairs:
                flipped[conversation_id].append(message_id)
            for conversation_id in flipped:
                await self.conversation_repo.recompute_unread(
                    conversations[conversation_id], reader_id
                )
            if pairs:
                await self.delivery_repo.record(
                    [message_id for message_id, _ in pairs],
                    reader_id,
                    DeliveryState.READ,
                )

        if self.broadcaster is not None:
            for conversation_id, ids in flipped.items():
                await self.broadcaster.read_receipt(
                    conversation_id, reader_id, sorted(ids), now
                )
        return MarkManyReadResponse(
            marked_read=sum(len(ids) for ids in flipped.values()),
            conversation_ids=sorted(flipped),
        )

    async def mark_delivered(
        self, message_ids: Sequence[int], recipient_id: int
    ) -> int:
        """Record that messages reached the recipient's device; never downgrades."""
        messages = await self.message_repo.get_many(list(set(message_ids)))
        for conversation_id in sorted({m.conversation_id for m in messages}):
            await self.require_participant(conversation_id, recipient_id)
        delivered = [m.id for m in messages if m.sender_id != recipient_id]
        if delivered:
            async with self.transaction():
                await self.delivery_repo.record(
                    delivered, recipient_id, DeliveryState.DELIVERED
                )
        return len(delivered)

    def _check_emoji(self, emoji: str) -> str:
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
            raise ValidationError(
                f"Emoji must be between 1 and {MAX_EMOJI_LENGTH} characters"
            )
        return emoji

    async def add_reaction(
        self, message_id: int, user_id: int, emoji: str
    ) -> List[ReactionGroup]:
        """Add a reaction; adding the same emoji twice keeps a single row."""
        emoji = self._check_emoji(emoji)
        message = await self.get_message(message_id, user_id)
        async with self.transaction():
            await self.reaction_repo.upsert(message_id, user_id, emoji)
        return await self._announce_reactions(message, user_id, emoji, "added")

    async def remove_reaction(
        self, message_id: int, user_id: int, emoji: str
    ) -> List[ReactionGroup]:
        emoji = self._check_emoji(emoji)
        message = await self.get_message(message_id, user_id)
        async with self.transaction():
            await self.reaction_repo.remove(message_id, user_id, emoji)
        return await self._announce_reactions(message, user_id, emoji, "removed")

    async def _announce_reactions(
        self, message: MessageResponse, user_id: int, emoji: str, action: str
    ) -> List[ReactionGroup]:
        reactions = await self.reaction_repo.grouped_for_message(message.id)
        if self.broadcaster is not None:
            await self.broadcaster.reaction_update(
                message.conversation_id, message.id, user_id, emoji, action, reactions
            )
        return reactions
