import logging
from typing import List, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Response,
    UploadFile,
    status,
)
from sqlalchemy.ext.asyncio import AsyncSession

from market_chat.clients.marketplace_client import MarketplaceClient
from market_chat.database import get_db
from market_chat.dependencies import (
    get_broadcaster,
    get_current_user_id,
    get_dispatcher,
    get_marketplace,
    get_storage,
)
from market_chat.exceptions import MessagingError, ValidationError
from market_chat.models.api.conversations import (
    BlockRequest,
    ConversationDetails,
    ConversationResponse,
    ConversationStats,
    ConversationSummary,
    MarkReadResponse,
    StartConversationRequest,
    StartConversationResponse,
    TypingRequest,
    UnreadCountResponse,
)
from market_chat.models.api.messages import (
    AttachmentUploadResponse,
    MessagePage,
    MessageResponse,
    MessageType,
    SendMessageRequest,
)
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.services.attachment_service import AttachmentService
from market_chat.services.blob_storage import BlobStorage
from market_chat.services.conversation_service import ConversationService
from market_chat.services.get_conversation_messages_service import (
    GetConversationMessagesService,
)
from market_chat.services.notification_dispatcher import NotificationDispatcher
from market_chat.services.send_message_service import SendMessageService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=List[ConversationSummary])
async def list_conversations(
    page: int = Query(1, description="Page number", ge=1),
    limit: int = Query(20, description="Conversations per page", ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> List[ConversationSummary]:
    """
    List the caller's conversations, most recent activity first.

    Query parameters:
    - page: Page number (default: 1)
    - limit: Conversations per page (default: 20, max: 100)
    """
    try:
        service = ConversationService(db, broadcaster)
        return await service.list_for_user(user_id, page=page, limit=limit)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to list conversations for user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post(
    "",
    response_model=StartConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_conversation(
    request: StartConversationRequest,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    marketplace: MarketplaceClient = Depends(get_marketplace),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> StartConversationResponse:
    """Contact the seller of an article; reuses the existing conversation if any."""
    try:
        service = ConversationService(db, broadcaster, marketplace)
        conversation, message = await service.start_by_article(
            request.article_id, user_id, request.content
        )
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to start conversation for user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    background_tasks.add_task(dispatcher.dispatch_new_message, conversation, message)
    return StartConversationResponse(conversation=conversation, message=message)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> UnreadCountResponse:
    """Badge count: unread messages across the caller's active conversations."""
    try:
        service = ConversationService(db)
        return UnreadCountResponse(unread_count=await service.total_unread(user_id))
    except Exception:
        logger.exception("Failed to count unread messages for user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{conversation_id}", response_model=ConversationDetails)
async def get_conversation(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> ConversationDetails:
    """
    Get a conversation as seen by the caller.

    Path parameters:
    - conversation_id: ID of the conversation
    """
    try:
        service = ConversationService(db, broadcaster)
        return await service.get_details(conversation_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to load conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def get_conversation_messages(
    conversation_id: int,
    limit: int = Query(50, description="Messages per page", ge=1, le=100),
    page: int = Query(1, description="Page number (ignored with before_id)", ge=1),
    before_id: Optional[int] = Query(
        None, description="Only return messages older than this id", ge=1
    ),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
) -> MessagePage:
    """
    Get a page of messages in chronological order.

    Query parameters:
    - limit: Messages per page (default: 50, max: 100)
    - page: Offset pagination page (default: 1)
    - before_id: Cursor pagination; takes precedence over page
    """
    try:
        service = GetConversationMessagesService(db, storage.url_for)
        return await service.list_page(
            conversation_id, user_id, limit=limit, page=page, before_id=before_id
        )
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to list messages for conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: int,
    request: SendMessageRequest,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> MessageResponse:
    """Send a text or offer message."""
    try:
        service = SendMessageService(db, broadcaster)
        if request.message_type == MessageType.OFFER:
            if request.offer_amount is None:
                raise ValidationError("offer_amount is required for offer messages")
            message = await service.create_offer_message(
                conversation_id,
                user_id,
                request.offer_amount,
                content=request.content,
                reply_to_message_id=request.reply_to_message_id,
            )
        elif request.message_type == MessageType.TEXT:
            message = await service.create(
                conversation_id,
                user_id,
                request.content,
                reply_to_message_id=request.reply_to_message_id,
            )
        else:
            raise ValidationError(
                "Only text and offer messages can be sent here",
                details={"message_type": request.message_type.value},
            )
        conversation = await service.get_conversation(conversation_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to send message to conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    background_tasks.add_task(dispatcher.dispatch_new_message, conversation, message)
    return message


@router.post("/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> MarkReadResponse:
    """Mark every message the other participant sent as read."""
    try:
        service = ConversationService(db, broadcaster)
        return await service.mark_read(conversation_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to mark conversation %s read", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{conversation_id}/typing", status_code=status.HTTP_204_NO_CONTENT)
async def set_typing(
    conversation_id: int,
    request: TypingRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> Response:
    try:
        service = ConversationService(db, broadcaster)
        await service.set_typing(conversation_id, user_id, request.is_typing)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to set typing in conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{conversation_id}/block", response_model=ConversationResponse)
async def block_conversation(
    conversation_id: int,
    request: BlockRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> ConversationResponse:
    """Block the other participant; later sends into the conversation fail."""
    try:
        service = ConversationService(db, broadcaster)
        return await service.block(conversation_id, user_id, request.reason)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to block conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{conversation_id}/archive", response_model=ConversationResponse)
async def archive_conversation(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ConversationResponse:
    try:
        service = ConversationService(db)
        return await service.archive(conversation_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to archive conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{conversation_id}/stats", response_model=ConversationStats)
async def get_conversation_stats(
    conversation_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ConversationStats:
    try:
        service = ConversationService(db)
        return await service.stats(conversation_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to compute stats for conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{conversation_id}/export")
async def export_conversation(
    conversation_id: int,
    format: str = Query("json", description="One of json, csv, txt"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Download the full conversation history."""
    try:
        service = ConversationService(db)
        body, media_type, filename = await service.export(
            conversation_id, user_id, format
        )
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to export conversation %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post(
    "/{conversation_id}/attachments",
    response_model=AttachmentUploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    conversation_id: int,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    content: Optional[str] = Form(None),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    storage: BlobStorage = Depends(get_storage),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> AttachmentUploadResponse:
    """Upload an image or document as a new message in the conversation."""
    try:
        service = AttachmentService(db, storage, broadcaster)
        service.check_declared_size(file.filename or "", file.size)
        data = await file.read()
        message, attachment = await service.upload(
            conversation_id,
            user_id,
            file.filename or "",
            data,
            declared_size=file.size,
            content=content,
        )
        conversation = await service.get_conversation(conversation_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to upload attachment to %s", conversation_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    background_tasks.add_task(dispatcher.dispatch_new_message, conversation, message)
    return AttachmentUploadResponse(message=message, attachment=attachment)
