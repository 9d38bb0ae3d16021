import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from market_chat.database import get_db
from market_chat.dependencies import get_current_user_id
from market_chat.exceptions import MessagingError
from market_chat.models.api.notifications import (
    MarkAllReadResponse,
    NotificationList,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    NotificationStats,
    PushSubscriptionRequest,
    PushSubscriptionResponse,
    UnsubscribePushRequest,
    UnsubscribeResponse,
    VapidKeyResponse,
)
from market_chat.services.notification_settings_service import (
    NotificationSettingsService,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/settings", response_model=NotificationSettingsResponse)
async def get_settings(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> NotificationSettingsResponse:
    """The caller's notification preferences; defaults are created on first read."""
    try:
        service = NotificationSettingsService(db)
        return await service.get_settings(user_id)
    except Exception:
        logger.exception("Failed to load notification settings for %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/settings", response_model=NotificationSettingsResponse)
async def update_settings(
    request: NotificationSettingsUpdate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> NotificationSettingsResponse:
    """
    Partially update notification preferences.

    Quiet hours take ``HH:MM`` strings and must be given together; send
    empty strings for both to clear them.
    """
    try:
        service = NotificationSettingsService(db)
        return await service.update_settings(user_id, request)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to update notification settings for %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/push/public-key", response_model=VapidKeyResponse)
async def get_push_public_key(
    db: AsyncSession = Depends(get_db),
) -> VapidKeyResponse:
    """VAPID application server key for the browser's PushManager.subscribe()."""
    try:
        return NotificationSettingsService(db).vapid_public_key()
    except MessagingError as e:
        raise e.to_http_exception()


@router.get("/push/subscriptions", response_model=List[PushSubscriptionResponse])
async def list_push_subscriptions(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> List[PushSubscriptionResponse]:
    try:
        service = NotificationSettingsService(db)
        return await service.list_push(user_id)
    except Exception:
        logger.exception("Failed to list push subscriptions for %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post(
    "/push/subscriptions",
    response_model=PushSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def subscribe_push(
    request: PushSubscriptionRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> PushSubscriptionResponse:
    """Register (or re-activate) a browser push subscription."""
    try:
        service = NotificationSettingsService(db)
        return await service.subscribe_push(user_id, request)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to save push subscription for %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/push/subscriptions", status_code=status.HTTP_204_NO_CONTENT)
async def unsubscribe_push(
    request: UnsubscribePushRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    try:
        service = NotificationSettingsService(db)
        await service.unsubscribe_push(user_id, request.endpoint)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to remove push subscription for %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/unsubscribe", response_model=UnsubscribeResponse)
async def unsubscribe_email(
    token: str = Query(..., description="Signed token from a notification email"),
    db: AsyncSession = Depends(get_db),
) -> UnsubscribeResponse:
    """One-click email unsubscribe; the token identifies the user."""
    try:
        service = NotificationSettingsService(db)
        user_id = await service.unsubscribe_email(token)
        return UnsubscribeResponse(user_id=user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to process unsubscribe link")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("", response_model=NotificationList)
async def list_notifications(
    unread_only: bool = Query(False, description="Only unread notifications"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> NotificationList:
    """
    List the caller's in-app notifications, newest first.

    Query parameters:
    - unread_only: Only unread notifications (default: false)
    - page: Page number (default: 1)
    - limit: Notifications per page (default: 20, max: 100)
    """
    try:
        service = NotificationSettingsService(db)
        return await service.list_notifications(
            user_id, unread_only=unread_only, page=page, limit=limit
        )
    except Exception:
        logger.exception("Failed to list notifications for %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/stats", response_model=NotificationStats)
async def get_notification_stats(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> NotificationStats:
    try:
        return await NotificationSettingsService(db).stats(user_id)
    except Exception:
        logger.exception("Failed to compute notification stats for %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/read-all", response_model=MarkAllReadResponse)
async def mark_all_notifications_read(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> MarkAllReadResponse:
    try:
        marked = await NotificationSettingsService(db).mark_all_read(user_id)
        return MarkAllReadResponse(marked_read=marked)
    except Exception:
        logger.exception("Failed to mark notifications read for %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_notification_read(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    try:
        await NotificationSettingsService(db).mark_read(notification_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to mark notification %s read", notification_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    try:
        await NotificationSettingsService(db).delete(notification_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to delete notification %s", notification_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
