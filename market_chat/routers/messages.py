import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from market_chat.database import get_db
from market_chat.dependencies import get_broadcaster, get_current_user_id
from market_chat.exceptions import MessagingError
from market_chat.models.api.messages import (
    DeliveredResponse,
    EditMessageRequest,
    MarkManyReadResponse,
    MessageIdsRequest,
    MessageResponse,
    MessageType,
    ReactionRequest,
    ReactionsResponse,
    SearchFilterOptions,
    SearchFilters,
    SearchResult,
)
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.services.message_action_service import MessageActionService
from market_chat.services.search_messages_service import SearchMessagesService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/search", response_model=SearchResult)
async def search_messages(
    q: str = Query(..., description="Text to search for (at least 2 characters)"),
    conversation_id: Optional[int] = Query(None, description="Limit to a conversation"),
    sender_id: Optional[int] = Query(None, description="Limit to a sender"),
    message_type: Optional[MessageType] = Query(None, description="Limit to a type"),
    date_from: Optional[datetime] = Query(None, description="Created at or after"),
    date_to: Optional[datetime] = Query(None, description="Created at or before"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> SearchResult:
    """
    Search message content across the caller's conversations.

    Query parameters:
    - q: Search text
    - conversation_id, sender_id, message_type, date_from, date_to: filters
    - page, limit: pagination (limit max: 100)
    """
    filters = SearchFilters(
        conversation_id=conversation_id,
        sender_id=sender_id,
        message_type=message_type,
        date_from=date_from,
        date_to=date_to,
    )
    try:
        service = SearchMessagesService(db)
        return await service.search(user_id, q, filters, page=page, limit=limit)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Message search failed for user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/search/filters", response_model=SearchFilterOptions)
async def get_search_filters(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> SearchFilterOptions:
    """Message types, date range and conversations available for filtering."""
    try:
        service = SearchMessagesService(db)
        return await service.filter_options(user_id)
    except Exception:
        logger.exception("Failed to load search filters for user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/read", response_model=MarkManyReadResponse)
async def mark_messages_read(
    request: MessageIdsRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> MarkManyReadResponse:
    """Mark specific messages read; the caller's own messages are skipped."""
    try:
        service = MessageActionService(db, broadcaster)
        return await service.mark_many_read(request.message_ids, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to mark messages read for user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/delivered", response_model=DeliveredResponse)
async def mark_messages_delivered(
    request: MessageIdsRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> DeliveredResponse:
    try:
        service = MessageActionService(db)
        delivered = await service.mark_delivered(request.message_ids, user_id)
        return DeliveredResponse(delivered=delivered)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to record delivery for user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: int,
    request: EditMessageRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> MessageResponse:
    """Edit one of the caller's own text messages."""
    try:
        service = MessageActionService(db, broadcaster)
        return await service.edit(message_id, user_id, request.content)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to edit message %s", message_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/{message_id}", response_model=MessageResponse)
async def delete_message(
    message_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> MessageResponse:
    """Soft-delete one of the caller's own text messages."""
    try:
        service = MessageActionService(db, broadcaster)
        return await service.soft_delete(message_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to delete message %s", message_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/{message_id}/read", response_model=MarkManyReadResponse)
async def mark_message_read(
    message_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> MarkManyReadResponse:
    try:
        service = MessageActionService(db, broadcaster)
        return await service.mark_read(message_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to mark message %s read", message_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{message_id}/reactions", response_model=ReactionsResponse)
async def add_reaction(
    message_id: int,
    request: ReactionRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> ReactionsResponse:
    try:
        service = MessageActionService(db, broadcaster)
        reactions = await service.add_reaction(message_id, user_id, request.emoji)
        return ReactionsResponse(message_id=message_id, reactions=reactions)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to add reaction to message %s", message_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/{message_id}/reactions", response_model=ReactionsResponse)
async def remove_reaction(
    message_id: int,
    emoji: str = Query(..., min_length=1, max_length=32),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> ReactionsResponse:
    try:
        service = MessageActionService(db, broadcaster)
        reactions = await service.remove_reaction(message_id, user_id, emoji)
        return ReactionsResponse(message_id=message_id, reactions=reactions)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to remove reaction from message %s", message_id)
        raise HTTPException(status_code=500, detail="Internal server error")
