from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from market_chat import config
from market_chat.exceptions import PermissionDeniedError, ValidationError
from market_chat.models.api.conversations import (
    ConversationResponse,
    ConversationStatus,
)
from market_chat.models.api.messages import (
    SYSTEM_SENDER_ID,
    DeliveryState,
    MessageResponse,
    MessageType,
)
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.repositories.block_repository import BlockRepository
from market_chat.repositories.delivery_status_repository import (
    DeliveryStatusRepository,
)
from market_chat.repositories.message_repository import MessageRepository
from market_chat.services.base_service import BaseService
from market_chat.services.content_sanitizer import sanitize_text


class SendMessageService(BaseService):
    """Service for persisting new messages and announcing them."""

    def __init__(self, db: AsyncSession, broadcaster: Optional[Broadcaster] = None):
        super().__init__(db)
        self.broadcaster = broadcaster
        self.message_repo = MessageRepository(db)
        self.delivery_repo = DeliveryStatusRepository(db)
        self.block_repo = BlockRepository(db)

    async def create(
        self,
        conversation_id: int,
        sender_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_message_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        system_message_type: Optional[str] = None,
    ) -> MessageResponse:
        """
        Main business logic for sending a message:
        1. Validate content, access and the reply reference
        2. Insert the message and update the conversation in one transaction
        3. Publish the new_message event after commit
        """
        conversation = await self.check_can_send(conversation_id, sender_id)
        content = await self.prepare_content(
            conversation, content, message_type, reply_to_message_id
        )

        async with self.transaction():
            message = await self.persist(
                conversation,
                sender_id,
                content,
                message_type,
                reply_to_message_id=reply_to_message_id,
                metadata=metadata,
                system_message_type=system_message_type,
            )

        await self.announce(conversation, message)
        return message

    async def create_system_message(
        self,
        conversation_id: int,
        system_message_type: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageResponse:
        return await self.create(
            conversation_id,
            SYSTEM_SENDER_ID,
            content,
            MessageType.SYSTEM,
            metadata=metadata,
            system_message_type=system_message_type,
        )

    async def create_offer_message(
        self,
        conversation_id: int,
        sender_id: int,
        offer_amount: float,
        content: Optional[str] = None,
        reply_to_message_id: Optional[int] = None,
    ) -> MessageResponse:
        if offer_amount <= 0:
            raise ValidationError("Offer amount must be positive")
        metadata = {
            "offer_amount": offer_amount,
            "offer_type": "price_offer",
            "offer_status": "pending",
        }
        return await self.create(
            conversation_id,
            sender_id,
            content or f"Made an offer of €{offer_amount:g}",
            MessageType.OFFER,
            reply_to_message_id=reply_to_message_id,
            metadata=metadata,
        )

    async def check_can_send(
        self, conversation_id: int, sender_id: int
    ) -> ConversationResponse:
        """Participants may send unless the conversation or the pair is blocked."""
        if sender_id == SYSTEM_SENDER_ID:
            return await self.get_conversation(conversation_id)

        conversation = await self.require_participant(conversation_id, sender_id)
        if conversation.status == ConversationStatus.BLOCKED:
            raise PermissionDeniedError(
                "Conversation is blocked",
                code="conversation_blocked",
                details={"conversation_id": conversation_id},
            )
        other_user_id = conversation.other_participant(sender_id)
        if await self.block_repo.exists_between(sender_id, other_user_id):
            raise PermissionDeniedError(
                "Cannot send message to blocked user",
                code="user_blocked",
                details={"conversation_id": conversation_id},
            )
        return conversation

    async def prepare_content(
        self,
        conversation: ConversationResponse,
        content: str,
        message_type: MessageType,
        reply_to_message_id: Optional[int] = None,
    ) -> str:
        """Validate and normalize content before anything is written."""
        if not content or not content.strip():
            raise ValidationError("Message content is required")
        if len(content) > config.MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message content exceeds {config.MAX_MESSAGE_LENGTH} characters",
                details={"max_length": config.MAX_MESSAGE_LENGTH},
            )
        if reply_to_message_id is not None:
            replied = await self.message_repo.get_in_conversation(
                reply_to_message_id, conversation.id
            )
            if not replied:
                raise ValidationError(
                    "Reply target must be a message in the same conversation",
                    details={"reply_to_message_id": reply_to_message_id},
                )
        if message_type == MessageType.TEXT:
            content = sanitize_text(content)
            if not content:
                raise ValidationError("Message content is empty after sanitizing")
        return content

    async def persist(
        self,
        conversation: ConversationResponse,
        sender_id: int,
        content: str,
        message_type: MessageType,
        reply_to_message_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        system_message_type: Optional[str] = None,
    ) -> MessageResponse:
        """Insert the message and update counters inside the caller's transaction."""
        message = await self.message_repo.create(
            conversation_id=conversation.id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            reply_to_message_id=reply_to_message_id,
            metadata=metadata,
            system_message_type=system_message_type,
        )
        await self.conversation_repo.record_new_message(
            conversation, message.id, message.created_at, sender_id
        )
        if sender_id != SYSTEM_SENDER_ID:
            await self.conversation_repo.set_typing(conversation, sender_id, False)
            await self.delivery_repo.record(
                [message.id],
                conversation.other_participant(sender_id),
                DeliveryState.SENT,
            )
        return message

    async def announce(
        self, conversation: ConversationResponse, message: MessageResponse
    ) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.new_message(conversation, message)
