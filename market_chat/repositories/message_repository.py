from datetime import datetime, timezone
from html import escape
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.messages import (
    ConversationCount,
    MessageResponse,
    MessageType,
    SearchFilterOptions,
    SearchFilters,
    TypeCount,
)
from market_chat.models.db.conversation_model import ConversationModel
from market_chat.models.db.message_model import MessageModel
from market_chat.repositories.base_repository import BaseRepository

DELETED_PLACEHOLDER = "[Message deleted]"


class MessageRepository(BaseRepository[MessageModel, MessageResponse]):
    """Repository for message operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, MessageModel)

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
        """Insert a message and flush so its id and timestamp are available."""
        now = datetime.now(timezone.utc)
        db_model = MessageModel(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type.value,
            system_message_type=system_message_type,
            reply_to_message_id=reply_to_message_id,
            message_metadata=metadata,
            is_read=False,
            is_edited=False,
            created_at=now,
            updated_at=now,
        )
        await self.add(db_model)
        return self._to_pydantic(db_model)

    async def get_in_conversation(
        self, message_id: int, conversation_id: int
    ) -> Optional[MessageResponse]:
        query = select(self.model_class).where(
            self.model_class.id == message_id,
            self.model_class.conversation_id == conversation_id,
        )
        result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    async def get_many(self, message_ids: Sequence[int]) -> List[MessageResponse]:
        if not message_ids:
            return []
        query = select(self.model_class).where(self.model_class.id.in_(message_ids))
        result = await self.db.execute(query)
        return [self._to_pydantic(db_model) for db_model in result.scalars().all()]

    async def list_page(
        self,
        conversation_id: int,
        limit: int,
        offset: int = 0,
        before_id: Optional[int] = None,
    ) -> Tuple[List[MessageResponse], bool]:
        """Newest-first slice of a conversation plus whether older messages remain."""
        query = select(self.model_class).where(
            self.model_class.conversation_id == conversation_id
        )
        if before_id is not None:
            query = query.where(self.model_class.id < before_id)
        else:
            query = query.offset(offset)
        query = query.order_by(self.model_class.id.desc()).limit(limit + 1)

        result = await self.db.execute(query)
        db_models = list(result.scalars().all())
        has_more = len(db_models) > limit
        return [self._to_pydantic(m) for m in db_models[:limit]], has_more

    async def list_all(self, conversation_id: int) -> List[MessageResponse]:
        """Entire conversation history in chronological order."""
        query = (
            select(self.model_class)
            .where(self.model_class.conversation_id == conversation_id)
            .order_by(self.model_class.id.asc())
        )
        result = await self.db.execute(query)
        return [self._to_pydantic(m) for m in result.scalars().all()]

    async def mark_conversation_read(
        self, conversation_id: int, reader_id: int, read_at: datetime
    ) -> List[int]:
        """Flip messages not sent by the reader to read; returns the flipped ids."""
        query = select(self.model_class.id).where(
            self.model_class.conversation_id == conversation_id,
            self.model_class.sender_id != reader_id,
            self.model_class.is_read == False,  # noqa: E712
        )
        result = await self.db.execute(query)
        message_ids = [row[0] for row in result.all()]
        if message_ids:
            await self._flip_read(message_ids, read_at)
        return message_ids

    async def mark_ids_read(
        self, message_ids: Sequence[int], reader_id: int, read_at: datetime
    ) -> List[Tuple[int, int]]:
        """Flip the given unread messages not sent by the reader.

        Returns (message_id, conversation_id) pairs that actually changed.
        """
        if not message_ids:
            return []
        query = select(self.model_class.id, self.model_class.conversation_id).where(
            self.model_class.id.in_(message_ids),
            self.model_class.sender_id != reader_id,
            self.model_class.is_read == False,  # noqa: E712
        )
        result = await self.db.execute(query)
        pairs = [(row[0], row[1]) for row in result.all()]
        if pairs:
            await self._flip_read([message_id for message_id, _ in pairs], read_at)
        return pairs

    async def _flip_read(self, message_ids: List[int], read_at: datetime) -> None:
        await self.db.execute(
            update(self.model_class)
            .where(
                self.model_class.id.in_(message_ids),
                self.model_class.is_read == False,  # noqa: E712
            )
            .values(is_read=True, read_at=read_at)
            .execution_options(synchronize_session=False)
        )

    async def edit_content(
        self, message_id: int, content: str, edited_at: datetime
    ) -> None:
        await self.update_fields(
            message_id,
            content=content,
            is_edited=True,
            edited_at=edited_at,
            updated_at=edited_at,
        )

    async def soft_delete(self, message_id: int, deleted_at: datetime) -> None:
        """Replace content with a placeholder and retype as system; the row stays."""
        await self.update_fields(
            message_id,
            content=DELETED_PLACEHOLDER,
            message_type=MessageType.SYSTEM.value,
            system_message_type="deleted",
            is_edited=True,
            edited_at=deleted_at,
            updated_at=deleted_at,
        )

    def _participant_conversations(self, user_id: int) -> Any:
        return select(ConversationModel.id).where(
            or_(
                ConversationModel.buyer_id == user_id,
                ConversationModel.seller_id == user_id,
            )
        )

    async def search(
        self,
        user_id: int,
        text: str,
        filters: SearchFilters,
        limit: int,
        offset: int,
    ) -> Tuple[List[MessageResponse], int]:
        """Case-insensitive content search scoped to the user's conversations."""
        conditions = [
            self.model_class.conversation_id.in_(
                self._participant_conversations(user_id)
            ),
            # Stored text is escaped, so the query is matched in the same form
            func.lower(self.model_class.content).contains(
                escape(text, quote=False).lower(), autoescape=True
            ),
        ]
        if filters.conversation_id is not None:
            conditions.append(
                self.model_class.conversation_id == filters.conversation_id
            )
        if filters.sender_id is not None:
            conditions.append(self.model_class.sender_id == filters.sender_id)
        if filters.message_type is not None:
            conditions.append(
                self.model_class.message_type == filters.message_type.value
            )
        if filters.date_from is not None:
            conditions.append(self.model_class.created_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(self.model_class.created_at <= filters.date_to)

        count_result = await self.db.execute(
            select(func.count(self.model_class.id)).where(*conditions)
        )
        total = int(count_result.scalar() or 0)

        query = (
            select(self.model_class)
            .where(*conditions)
            .order_by(self.model_class.created_at.desc(), self.model_class.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return [self._to_pydantic(m) for m in result.scalars().all()], total

    async def filter_options(self, user_id: int) -> SearchFilterOptions:
        scope = self.model_class.conversation_id.in_(
            self._participant_conversations(user_id)
        )

        type_rows = await self.db.execute(
            select(self.model_class.message_type, func.count(self.model_class.id))
            .where(scope)
            .group_by(self.model_class.message_type)
            .order_by(self.model_class.message_type)
        )
        range_row = (
            await self.db.execute(
                select(
                    func.min(self.model_class.created_at),
                    func.max(self.model_class.created_at),
                ).where(scope)
            )
        ).one()
        conversation_rows = await self.db.execute(
            select(
                ConversationModel.id,
                ConversationModel.article_id,
                func.count(self.model_class.id),
            )
            .join(
                self.model_class,
                self.model_class.conversation_id == ConversationModel.id,
            )
            .where(scope)
            .group_by(ConversationModel.id, ConversationModel.article_id)
            .order_by(ConversationModel.id)
        )

        return SearchFilterOptions(
            message_types=[
                TypeCount(message_type=row[0], count=row[1]) for row in type_rows.all()
            ],
            earliest=range_row[0],
            latest=range_row[1],
            conversations=[
                ConversationCount(
                    conversation_id=row[0], article_id=row[1], message_count=row[2]
                )
                for row in conversation_rows.all()
            ],
        )

    async def stats(
        self, conversation_id: int
    ) -> Tuple[Dict[str, int], Optional[datetime], Optional[datetime]]:
        """Per-type counts plus first and last message timestamps."""
        type_rows = await self.db.execute(
            select(self.model_class.message_type, func.count(self.model_class.id))
            .where(self.model_class.conversation_id == conversation_id)
            .group_by(self.model_class.message_type)
        )
        by_type = {row[0]: int(row[1]) for row in type_rows.all()}
        range_row = (
            await self.db.execute(
                select(
                    func.min(self.model_class.created_at),
                    func.max(self.model_class.created_at),
                ).where(self.model_class.conversation_id == conversation_id)
            )
        ).one()
        return by_type, range_row[0], range_row[1]

    def _to_pydantic(self, db_model: Any) -> MessageResponse:
        """Convert SQLAlchemy MessageModel to Pydantic MessageResponse."""
        return MessageResponse(
            id=db_model.id,
            conversation_id=db_model.conversation_id,
            sender_id=db_model.sender_id,
            content=db_model.content,
            message_type=db_model.message_type,
            system_message_type=db_model.system_message_type,
            is_read=bool(db_model.is_read),
            read_at=db_model.read_at,
            is_edited=bool(db_model.is_edited),
            edited_at=db_model.edited_at,
            reply_to_message_id=db_model.reply_to_message_id,
            metadata=db_model.message_metadata,
            created_at=db_model.created_at,
        )
