from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.attachments import (
    AttachmentRecord,
    AttachmentResponse,
    StoredFile,
)
from market_chat.models.db.attachment_model import AttachmentModel
from market_chat.models.db.message_model import MessageModel
from market_chat.repositories.base_repository import BaseRepository

UrlBuilder = Callable[[str], str]


class AttachmentRepository(BaseRepository[AttachmentModel, AttachmentResponse]):
    """Repository for message attachments."""

    def __init__(self, db: AsyncSession, url_for: UrlBuilder):
        super().__init__(db, AttachmentModel)
        self.url_for = url_for

    async def create(self, message_id: int, stored: StoredFile) -> AttachmentResponse:
        db_model = AttachmentModel(
            message_id=message_id,
            filename=stored.filename,
            original_filename=stored.original_filename,
            file_path=stored.file_path,
            file_size=stored.file_size,
            mime_type=stored.mime_type,
            width=stored.width,
            height=stored.height,
            thumbnail_path=stored.thumbnail_path,
            is_image=stored.is_image,
        )
        await self.add(db_model)
        return self._to_pydantic(db_model)

    async def get_record(self, attachment_id: int) -> Optional[AttachmentRecord]:
        """Attachment with its storage paths and owning conversation and sender."""
        query = (
            select(
                self.model_class,
                MessageModel.conversation_id,
                MessageModel.sender_id,
            )
            .join(MessageModel, MessageModel.id == self.model_class.message_id)
            .where(self.model_class.id == attachment_id)
        )
        result = await self.db.execute(query)
        row = result.one_or_none()
        if row is None:
            return None
        db_model, conversation_id, sender_id = row
        return AttachmentRecord(
            **self._to_pydantic(db_model).model_dump(),
            file_path=db_model.file_path,
            thumbnail_path=db_model.thumbnail_path,
            conversation_id=conversation_id,
            sender_id=sender_id,
        )

    async def for_messages(
        self, message_ids: Sequence[int]
    ) -> Dict[int, List[AttachmentResponse]]:
        if not message_ids:
            return {}
        query = (
            select(self.model_class)
            .where(self.model_class.message_id.in_(message_ids))
            .order_by(self.model_class.id)
        )
        result = await self.db.execute(query)
        grouped: Dict[int, List[AttachmentResponse]] = defaultdict(list)
        for db_model in result.scalars().all():
            grouped[db_model.message_id].append(self._to_pydantic(db_model))
        return dict(grouped)

    def _to_pydantic(self, db_model: Any) -> AttachmentResponse:
        """Convert SQLAlchemy AttachmentModel to Pydantic AttachmentResponse."""
        return AttachmentResponse(
            id=db_model.id,
            message_id=db_model.message_id,
            filename=db_model.filename,
            original_filename=db_model.original_filename,
            file_size=db_model.file_size,
            mime_type=db_model.mime_type,
            is_image=bool(db_model.is_image),
            width=db_model.width,
            height=db_model.height,
            url=self.url_for(db_model.file_path),
            thumbnail_url=(
                self.url_for(db_model.thumbnail_path)
                if db_model.thumbnail_path
                else None
            ),
            created_at=db_model.created_at,
        )
