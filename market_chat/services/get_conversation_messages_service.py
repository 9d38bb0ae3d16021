from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from market_chat.exceptions import ValidationError
from market_chat.models.api.messages import MessagePage, MessageResponse, MessageType
from market_chat.repositories.attachment_repository import (
    AttachmentRepository,
    UrlBuilder,
)
from market_chat.repositories.message_repository import MessageRepository
from market_chat.repositories.reaction_repository import ReactionRepository
from market_chat.services.base_service import BaseService

MAX_PAGE_SIZE = 100


class GetConversationMessagesService(BaseService):
    """Service for retrieving messages from a specific conversation."""

    def __init__(self, db: AsyncSession, url_for: UrlBuilder):
        super().__init__(db)
        self.message_repo = MessageRepository(db)
        self.reaction_repo = ReactionRepository(db)
        self.attachment_repo = AttachmentRepository(db, url_for)

    async def list_page(
        self,
        conversation_id: int,
        user_id: int,
        limit: int = 50,
        page: int = 1,
        before_id: Optional[int] = None,
    ) -> MessagePage:
        """
        Get a page of messages for a conversation:

        1. Verify the caller participates in the conversation
        2. Fetch newest-first by offset or by ``before_id`` cursor
        3. Attach reactions and attachments, return oldest-first
        """
        if limit <= 0 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
        if page < 1:
            raise ValidationError("Page must be at least 1")

        await self.require_participant(conversation_id, user_id)

        newest_first, has_more = await self.message_repo.list_page(
            conversation_id,
            limit=limit,
            offset=(page - 1) * limit,
            before_id=before_id,
        )
        messages = await self.enrich(list(reversed(newest_first)))
        return MessagePage(
            messages=messages,
            page=page,
            limit=limit,
            has_more=has_more,
            next_before_id=messages[0].id if has_more and messages else None,
        )

    async def enrich(self, messages: List[MessageResponse]) -> List[MessageResponse]:
        """Attach grouped reactions, plus attachments for image and file messages."""
        ids = [m.id for m in messages]
        reactions = await self.reaction_repo.grouped_for_messages(ids)
        attachment_ids = [
            m.id
            for m in messages
            if m.message_type in (MessageType.IMAGE, MessageType.FILE)
        ]
        attachments = await self.attachment_repo.for_messages(attachment_ids)
        return [
            m.model_copy(
                update={
                    "reactions": reactions.get(m.id, []),
                    "attachments": attachments.get(m.id, []),
                }
            )
            for m in messages
        ]
