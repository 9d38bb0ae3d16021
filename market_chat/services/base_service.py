import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from market_chat.exceptions import NotFoundError, PermissionDeniedError
from market_chat.models.api.conversations import ConversationResponse
from market_chat.repositories.conversation_repository import ConversationRepository


class BaseService:
    """Shared plumbing for services: transaction scope and participant checks."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.conversation_repo = ConversationRepository(db)
        self.logger = logging.getLogger(self.__class__.__module__)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Commit on success; roll back and re-raise on any error."""
        try:
            yield self.db
            await self.db.commit()
        except Exception as e:
            self.logger.debug("Rolling back transaction: %s", e)
            await self.db.rollback()
            raise

    async def get_conversation(self, conversation_id: int) -> ConversationResponse:
        conversation = await self.conversation_repo.get_by_id(conversation_id)
        if not conversation:
            raise NotFoundError(
                f"Conversation {conversation_id} not found",
                details={"conversation_id": conversation_id},
            )
        return conversation

    async def require_participant(
        self, conversation_id: int, user_id: int
    ) -> ConversationResponse:
        """Load a conversation, failing unless ``user_id`` is one of its two parties."""
        conversation = await self.get_conversation(conversation_id)
        if not conversation.is_participant(user_id):
            raise PermissionDeniedError(
                "Access denied to this conversation",
                details={"conversation_id": conversation_id},
            )
        return conversation
