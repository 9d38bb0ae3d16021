from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.messages import ReactionGroup
from market_chat.models.db.reaction_model import ReactionModel
from market_chat.repositories.base_repository import BaseRepository


class ReactionRepository(BaseRepository[ReactionModel, ReactionGroup]):
    """Repository for emoji reactions on messages."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, ReactionModel)

    async def upsert(self, message_id: int, user_id: int, emoji: str) -> None:
        """Add a reaction; repeating the same triple only refreshes its timestamp."""
        now = datetime.now(timezone.utc)
        stmt = self._insert().values(
            message_id=message_id, user_id=user_id, emoji=emoji, created_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["message_id", "user_id", "emoji"],
            set_={"created_at": now},
        )
        await self.db.execute(stmt)

    async def remove(self, message_id: int, user_id: int, emoji: str) -> bool:
        result = await self.db.execute(
            delete(self.model_class).where(
                self.model_class.message_id == message_id,
                self.model_class.user_id == user_id,
                self.model_class.emoji == emoji,
            )
        )
        return bool(result.rowcount)

    async def grouped_for_messages(
        self, message_ids: Sequence[int]
    ) -> Dict[int, List[ReactionGroup]]:
        """Reactions per message, grouped by emoji in first-reacted order."""
        if not message_ids:
            return {}
        query = (
            select(self.model_class)
            .where(self.model_class.message_id.in_(message_ids))
            .order_by(self.model_class.created_at, self.model_class.id)
        )
        result = await self.db.execute(query)

        users: Dict[int, Dict[str, List[int]]] = defaultdict(dict)
        for reaction in result.scalars().all():
            users[reaction.message_id].setdefault(reaction.emoji, []).append(
                reaction.user_id
            )
        return {
            message_id: [
                ReactionGroup(emoji=emoji, count=len(user_ids), user_ids=user_ids)
                for emoji, user_ids in by_emoji.items()
            ]
            for message_id, by_emoji in users.items()
        }

    async def grouped_for_message(self, message_id: int) -> List[ReactionGroup]:
        grouped = await self.grouped_for_messages([message_id])
        return grouped.get(message_id, [])
