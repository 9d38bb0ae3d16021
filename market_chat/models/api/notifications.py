from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NotificationFrequency(str, Enum):
    INSTANT = "instant"
    HOURLY = "hourly"
    DAILY = "daily"
    NEVER = "never"


class NotificationSettingsResponse(BaseModel):
    """Per-user notification preferences."""

    user_id: int
    email_notifications: bool = True
    push_notifications: bool = True
    in_app_notifications: bool = True
    sound_notifications: bool = True
    notification_frequency: NotificationFrequency = NotificationFrequency.INSTANT
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None

    model_config = ConfigDict(from_attributes=True)


class NotificationSettingsUpdate(BaseModel):
    """Partial update of notification preferences.

    Quiet hours are ``HH:MM`` or ``HH:MM:SS`` strings; both ends are set
    together or cleared together with empty strings.
    """

    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    in_app_notifications: Optional[bool] = None
    sound_notifications: Optional[bool] = None
    notification_frequency: Optional[str] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None


class PushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscriptionRequest(BaseModel):
    """Browser PushSubscription as serialized by the client."""

    endpoint: str = Field(..., min_length=1, max_length=500)
    keys: PushKeys
    user_agent: Optional[str] = None


class PushSubscriptionResponse(BaseModel):
    id: int
    user_id: int
    endpoint: str
    p256dh_key: str
    auth_key: str
    user_agent: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UnsubscribePushRequest(BaseModel):
    endpoint: str = Field(..., min_length=1)


class VapidKeyResponse(BaseModel):
    public_key: str


class NotificationResponse(BaseModel):
    """In-app notification record."""

    id: int
    user_id: int
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationList(BaseModel):
    notifications: List[NotificationResponse]
    total: int
    page: int
    limit: int


class NotificationStats(BaseModel):
    total: int
    unread: int


class DispatchResult(BaseModel):
    """Which channels a single dispatch reached."""

    recipient_id: int
    suppressed: Optional[str] = None
    email: bool = False
    push: int = 0
    in_app: bool = False


class MarkAllReadResponse(BaseModel):
    marked_read: int


class UnsubscribeResponse(BaseModel):
    user_id: int
    email_notifications: bool = False
