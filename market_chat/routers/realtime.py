import logging
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    status,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse

from market_chat import config
from market_chat.database import get_db, session_scope
from market_chat.dependencies import (
    get_broadcaster,
    get_current_user_id,
    get_registry,
    parse_user_id,
)
from market_chat.exceptions import MessagingError
from market_chat.models.api.realtime import PresenceResponse, TypingUsersResponse
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.realtime.connection_registry import ConnectionRegistry
from market_chat.realtime.sse_stream import create_sse_stream
from market_chat.realtime.websocket_session import WebSocketSession
from market_chat.repositories.conversation_repository import ConversationRepository
from market_chat.services.conversation_service import ConversationService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    user_id: Optional[str] = Query(None, description="Fallback for X-User-Id"),
):
    """
    Bidirectional realtime stream.

    Browsers cannot set headers on a WebSocket handshake, so the caller may
    pass ``user_id`` as a query parameter instead of ``X-User-Id``.
    """
    caller = parse_user_id(websocket.headers.get("x-user-id") or user_id)
    if caller is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    state = websocket.app.state
    async with session_scope(state.session_factory) as db:
        conversation_ids = await ConversationRepository(db).ids_for_user(caller)

    await websocket.accept()
    session = WebSocketSession(
        websocket,
        caller,
        state.bus,
        state.broadcaster,
        state.registry,
        state.session_factory,
    )
    await session.run(conversation_ids)


@router.get("/stream")
async def stream_events(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    registry: ConnectionRegistry = Depends(get_registry),
) -> EventSourceResponse:
    """Server-sent events fallback for clients that cannot hold a WebSocket."""
    state = request.app.state
    async with session_scope(state.session_factory) as db:
        conversation_ids = await ConversationRepository(db).ids_for_user(user_id)

    client = request.client
    return EventSourceResponse(
        create_sse_stream(
            user_id,
            conversation_ids,
            state.bus,
            registry,
            keepalive_interval=config.SSE_KEEPALIVE_SECONDS,
            poll_timeout=config.SSE_POLL_TIMEOUT_SECONDS,
            user_agent=request.headers.get("user-agent"),
            ip_address=client.host if client else None,
        )
    )


@router.get("/presence/{target_user_id}", response_model=PresenceResponse)
async def get_presence(
    target_user_id: int,
    user_id: int = Depends(get_current_user_id),
    registry: ConnectionRegistry = Depends(get_registry),
) -> PresenceResponse:
    try:
        return await registry.is_online(target_user_id)
    except Exception:
        logger.exception("Presence lookup failed for user %s", target_user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get(
    "/conversations/{conversation_id}/typing", response_model=TypingUsersResponse
)
async def get_typing_users(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> TypingUsersResponse:
    """Users whose typing marker in this conversation has not yet expired."""
    try:
        await ConversationService(db).require_participant(conversation_id, user_id)
        typing = await broadcaster.typing_users(conversation_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to load typing users for %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    return TypingUsersResponse(
        conversation_id=conversation_id,
        typing_user_ids=[uid for uid in typing if uid != user_id],
    )
