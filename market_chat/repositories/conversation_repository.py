from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.conversations import (
    ConversationResponse,
    ConversationStatus,
    ParticipantRole,
)
from market_chat.models.db.conversation_model import ConversationModel
from market_chat.models.db.message_model import MessageModel
from market_chat.repositories.base_repository import BaseRepository

_UNREAD_COLUMN = {
    ParticipantRole.BUYER: "buyer_unread_count",
    ParticipantRole.SELLER: "seller_unread_count",
}
_TYPING_COLUMN = {
    ParticipantRole.BUYER: "is_buyer_typing",
    ParticipantRole.SELLER: "is_seller_typing",
}
_LAST_SEEN_COLUMN = {
    ParticipantRole.BUYER: "buyer_last_seen",
    ParticipantRole.SELLER: "seller_last_seen",
}


class ConversationRepository(BaseRepository[ConversationModel, ConversationResponse]):
    """Repository for conversation operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, ConversationModel)

    async def get_by_triple(
        self, article_id: int, buyer_id: int, seller_id: int
    ) -> Optional[ConversationResponse]:
        """Find the conversation between a buyer and seller about one article."""
        query = (
            select(self.model_class)
            .where(
                self.model_class.article_id == article_id,
                self.model_class.buyer_id == buyer_id,
                self.model_class.seller_id == seller_id,
            )
            .execution_options(populate_existing=True)
        )  # type: ignore
        result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    async def find_or_create(
        self, article_id: int, buyer_id: int, seller_id: int
    ) -> Tuple[ConversationResponse, bool]:
        """Return the conversation for the triple, creating it if missing.

        Concurrent first contact collides on the unique triple; the loser's
        insert is skipped and it reads the winner's row.
        """
        existing = await self.get_by_triple(article_id, buyer_id, seller_id)
        if existing:
            return existing, False

        now = datetime.now(timezone.utc)
        stmt = (
            self._insert()
            .values(
                article_id=article_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                status=ConversationStatus.ACTIVE.value,
                buyer_unread_count=0,
                seller_unread_count=0,
                is_buyer_typing=False,
                is_seller_typing=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["article_id", "buyer_id", "seller_id"]
            )
        )
        result = await self.db.execute(stmt)
        created = bool(result.rowcount)

        conversation = await self.get_by_triple(article_id, buyer_id, seller_id)
        if conversation is None:
            raise RuntimeError("Conversation missing after insert")
        return conversation, created

    async def list_for_user(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> List[ConversationResponse]:
        """Conversations the user participates in, most recent activity first."""
        activity = func.coalesce(
            self.model_class.last_message_at, self.model_class.created_at
        )
        query = (
            select(self.model_class)
            .where(
                or_(
                    self.model_class.buyer_id == user_id,
                    self.model_class.seller_id == user_id,
                )
            )
            .order_by(activity.desc(), self.model_class.id.desc())
            .limit(limit)
            .offset(offset)
        )  # type: ignore
        result = await self.db.execute(query)
        return [self._to_pydantic(db_model) for db_model in result.scalars().all()]

    async def ids_for_user(self, user_id: int) -> List[int]:
        query = select(self.model_class.id).where(
            or_(
                self.model_class.buyer_id == user_id,
                self.model_class.seller_id == user_id,
            )
        )
        result = await self.db.execute(query)
        return [row[0] for row in result.all()]

    async def total_unread(self, user_id: int) -> int:
        """Sum of the user's side of the unread counters over active conversations."""
        own_side = case(
            (self.model_class.buyer_id == user_id, self.model_class.buyer_unread_count),
            else_=self.model_class.seller_unread_count,
        )
        query = select(func.coalesce(func.sum(own_side), 0)).where(
            self.model_class.status == ConversationStatus.ACTIVE.value,
            or_(
                self.model_class.buyer_id == user_id,
                self.model_class.seller_id == user_id,
            ),
        )
        result = await self.db.execute(query)
        return int(result.scalar() or 0)

    async def record_new_message(
        self,
        conversation: ConversationResponse,
        message_id: int,
        message_at: datetime,
        sender_id: int,
    ) -> None:
        """Point the conversation at a new message and bump the recipients' counters.

        Counters are incremented in SQL so concurrent senders do not lose updates.
        """
        values: Dict[str, Any] = {
            "last_message_id": message_id,
            "last_message_at": message_at,
            "updated_at": datetime.now(timezone.utc),
        }
        if sender_id != conversation.buyer_id:
            values["buyer_unread_count"] = self.model_class.buyer_unread_count + 1
        if sender_id != conversation.seller_id:
            values["seller_unread_count"] = self.model_class.seller_unread_count + 1
        await self.update_fields(conversation.id, **values)

    async def recompute_unread(
        self, conversation: ConversationResponse, reader_id: int
    ) -> int:
        """Reset the reader's counter to the number of messages still unread by them."""
        role = conversation.role_of(reader_id)
        unread = (
            select(func.count(MessageModel.id))
            .where(
                MessageModel.conversation_id == conversation.id,
                MessageModel.sender_id != reader_id,
                MessageModel.is_read == False,  # noqa: E712
            )
            .scalar_subquery()
        )
        await self.db.execute(
            update(self.model_class)
            .where(self.model_class.id == conversation.id)
            .values({_UNREAD_COLUMN[role]: unread})
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            select(getattr(self.model_class, _UNREAD_COLUMN[role])).where(
                self.model_class.id == conversation.id
            )
        )
        return int(result.scalar() or 0)

    async def set_typing(
        self, conversation: ConversationResponse, user_id: int, is_typing: bool
    ) -> None:
        column = _TYPING_COLUMN[conversation.role_of(user_id)]
        await self.update_fields(conversation.id, **{column: is_typing})

    async def touch_last_seen(
        self, conversation: ConversationResponse, user_id: int, seen_at: datetime
    ) -> None:
        column = _LAST_SEEN_COLUMN[conversation.role_of(user_id)]
        await self.update_fields(conversation.id, **{column: seen_at})

    async def set_status(
        self, conversation_id: int, status: ConversationStatus
    ) -> None:
        await self.update_fields(
            conversation_id,
            status=status.value,
            updated_at=datetime.now(timezone.utc),
        )

    def _to_pydantic(self, db_model: Any) -> ConversationResponse:
        """Convert SQLAlchemy ConversationModel to Pydantic ConversationResponse."""
        return ConversationResponse(
            id=db_model.id,
            article_id=db_model.article_id,
            buyer_id=db_model.buyer_id,
            seller_id=db_model.seller_id,
            status=db_model.status,
            last_message_id=db_model.last_message_id,
            last_message_at=db_model.last_message_at,
            buyer_unread_count=db_model.buyer_unread_count or 0,
            seller_unread_count=db_model.seller_unread_count or 0,
            is_buyer_typing=bool(db_model.is_buyer_typing),
            is_seller_typing=bool(db_model.is_seller_typing),
            buyer_last_seen=db_model.buyer_last_seen,
            seller_last_seen=db_model.seller_last_seen,
            created_at=db_model.created_at,
            updated_at=db_model.updated_at,
        )
