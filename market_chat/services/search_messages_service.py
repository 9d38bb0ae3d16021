import math

from sqlalchemy.ext.asyncio import AsyncSession

from market_chat.exceptions import ValidationError
from market_chat.models.api.messages import (
    SearchFilterOptions,
    SearchFilters,
    SearchResult,
)
from market_chat.repositories.message_repository import MessageRepository
from market_chat.services.base_service import BaseService

MIN_QUERY_LENGTH = 2
MAX_SEARCH_LIMIT = 100


class SearchMessagesService(BaseService):
    """Service for searching messages across the caller's conversations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db)
        self.message_repo = MessageRepository(db)

    async def search(
        self,
        user_id: int,
        query: str,
        filters: SearchFilters,
        page: int = 1,
        limit: int = 50,
    ) -> SearchResult:
        query = (query or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            raise ValidationError(
                f"Search query must be at least {MIN_QUERY_LENGTH} characters"
            )
        if page < 1:
            raise ValidationError("Page must be at least 1")
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))
        if filters.conversation_id is not None:
            await self.require_participant(filters.conversation_id, user_id)

        messages, total = await self.message_repo.search(
            user_id, query, filters, limit=limit, offset=(page - 1) * limit
        )
        return SearchResult(
            messages=messages,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def filter_options(self, user_id: int) -> SearchFilterOptions:
        return await self.message_repo.filter_options(user_id)
