from datetime import datetime, time, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_chat import config
from market_chat.clients.email_provider_client import EmailProviderClient
from market_chat.clients.marketplace_client import UserInfo
from market_chat.clients.push_provider_client import (
    PushProviderClient,
    PushSubscriptionGoneError,
)
from market_chat.models.api.messages import MessageResponse, MessageType
from market_chat.models.api.notifications import (
    NotificationFrequency,
    NotificationSettingsResponse,
)
from market_chat.models.api.realtime import EventType, user_channel
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.realtime.bus import InMemoryEventBus
from market_chat.repositories.notification_repository import NotificationRepository
from market_chat.repositories.notification_settings_repository import (
    NotificationSettingsRepository,
)
from market_chat.repositories.push_subscription_repository import (
    PushSubscriptionRepository,
)
from market_chat.services.notification_dispatcher import (
    NotificationDispatcher,
    in_quiet_hours,
    message_preview,
)
from market_chat.services.send_message_service import SendMessageService

NOON = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_message(
    message_type: MessageType = MessageType.TEXT,
    content: str = "Hello",
    metadata: Optional[dict] = None,
) -> MessageResponse:
    return MessageResponse(
        id=1,
        conversation_id=1,
        sender_id=2,
        content=content,
        message_type=message_type,
        metadata=metadata,
        created_at=NOON,
    )


def email_client() -> AsyncMock:
    client = AsyncMock(spec=EmailProviderClient)
    client.is_configured = MagicMock(return_value=True)
    client.extract_status = MagicMock(return_value="sent")
    client.send_message.return_value = {"status": "processed"}
    return client


def push_client() -> AsyncMock:
    client = AsyncMock(spec=PushProviderClient)
    client.is_configured = MagicMock(return_value=True)
    client.send_message.return_value = {"status_code": 201}
    return client


class TestQuietHours:
    @pytest.mark.parametrize(
        "now,expected",
        [
            (time(23, 30), True),
            (time(5, 0), True),
            (time(22, 0), True),
            (time(6, 0), True),
            (time(12, 0), False),
            (time(6, 1), False),
        ],
    )
    def test_window_wrapping_midnight(self, now: time, expected: bool) -> None:
        assert in_quiet_hours(time(22, 0), time(6, 0), now) is expected

    @pytest.mark.parametrize(
        "now,expected", [(time(12, 0), True), (time(20, 0), False)]
    )
    def test_daytime_window(self, now: time, expected: bool) -> None:
        assert in_quiet_hours(time(9, 0), time(17, 0), now) is expected

    def test_unset_window_never_quiet(self) -> None:
        assert in_quiet_hours(None, time(6, 0), time(3, 0)) is False


class TestMessagePreview:
    def test_text_stripped_and_truncated(self) -> None:
        message = make_message(content="<b>" + "x" * 150 + "</b>")

        preview = message_preview(message)

        assert preview == "x" * 100 + "..."

    def test_typed_previews(self) -> None:
        assert message_preview(make_message(MessageType.IMAGE)) == "📷 Sent a photo"
        assert message_preview(make_message(MessageType.FILE)) == "📄 Sent a file"
        offer = make_message(MessageType.OFFER, metadata={"offer_amount": 150.0})
        assert message_preview(offer) == "💰 Made an offer of €150"

    @pytest.mark.asyncio
    async def test_escaped_text_previews_as_plain_text(
        self, test_db: AsyncSession, conversation_factory: Any
    ) -> None:
        """Test that stored escaping does not leak into push and email previews."""
        conversation = await conversation_factory()
        message = await SendMessageService(test_db).create(
            conversation.id, 2, "Fish & chips < 5 euros?"
        )

        assert message.content == "Fish &amp; chips &lt; 5 euros?"
        assert message_preview(message) == "Fish & chips < 5 euros?"

        rendered = NotificationDispatcher(MagicMock()).render_email(
            conversation,
            message,
            UserInfo(id=2, first_name="Bea"),
            UserInfo(id=1, first_name="Sol"),
            None,
            message_preview(message),
        )
        assert "Fish &amp; chips &lt; 5 euros?" in rendered["html"]
        assert "&amp;amp;" not in rendered["html"]
        assert "Fish & chips < 5 euros?" in rendered["text"]


class TestSuppression:
    @pytest.fixture
    def dispatcher(self) -> NotificationDispatcher:
        return NotificationDispatcher(MagicMock(), clock=lambda: NOON)

    def test_never_frequency(self, dispatcher: NotificationDispatcher) -> None:
        settings = NotificationSettingsResponse(
            user_id=1, notification_frequency=NotificationFrequency.NEVER
        )
        assert dispatcher.suppression_reason(settings, NOON) == "frequency_never"

    def test_quiet_hours_in_utc(self, dispatcher: NotificationDispatcher) -> None:
        settings = NotificationSettingsResponse(
            user_id=1, quiet_hours_start=time(9, 0), quiet_hours_end=time(17, 0)
        )
        assert dispatcher.suppression_reason(settings, NOON) == "quiet_hours"
        evening = NOON.replace(hour=20)
        assert dispatcher.suppression_reason(settings, evening) is None


class TestDispatchNewMessage:
    """Integration tests for channel delivery against SQLite."""

    async def _send(self, db: AsyncSession, conversation_factory: Any) -> tuple:
        conversation = await conversation_factory()
        message = await SendMessageService(db).create(
            conversation.id, 2, "Is it still available?"
        )
        return conversation, message

    @pytest.mark.asyncio
    async def test_all_channels(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        conversation_factory: Any,
        marketplace: AsyncMock,
    ) -> None:
        """Test email, push and in-app delivery to the seller."""
        conversation, message = await self._send(test_db, conversation_factory)
        await PushSubscriptionRepository(test_db).upsert(
            1, "https://push.example.com/abc", "p256dh", "auth"
        )
        await test_db.commit()
        email, push = email_client(), push_client()
        dispatcher = NotificationDispatcher(
            session_factory,
            email_client=email,
            push_client=push,
            marketplace=marketplace,
            clock=lambda: NOON,
            frontend_url="https://market.example.com",
        )

        result = await dispatcher.dispatch_new_message(conversation, message)

        assert result is not None
        assert result.recipient_id == 1
        assert result.suppressed is None
        assert result.email is True
        assert result.push == 1
        assert result.in_app is True

        sent = email.send_message.call_args.args[0]
        assert sent.to_email == "seller@example.com"
        assert sent.subject == "New message from Bea"
        assert "Vintage bicycle" in sent.html
        assert f"/messages/{conversation.id}" in sent.text
        assert "unsubscribe?token=" in sent.text

        pushed = push.send_message.call_args.args[0]
        assert pushed.payload["tag"] == f"conversation_{conversation.id}"
        assert pushed.payload["body"].startswith("Re: Vintage bicycle - ")

        notifications, total = await NotificationRepository(test_db).list_for_user(
            1, unread_only=True, limit=10, offset=0
        )
        assert total == 1
        assert notifications[0].type == "new_message"
        assert notifications[0].data is not None
        assert notifications[0].data["message_id"] == message.id

    @pytest.mark.asyncio
    async def test_quiet_hours_suppress_every_channel(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        conversation_factory: Any,
    ) -> None:
        conversation, message = await self._send(test_db, conversation_factory)
        await NotificationSettingsRepository(test_db).update_for_user(
            1, quiet_hours_start=time(22, 0), quiet_hours_end=time(6, 0)
        )
        await test_db.commit()
        email = email_client()
        late = NOON.replace(hour=23, minute=30)
        dispatcher = NotificationDispatcher(
            session_factory, email_client=email, clock=lambda: late
        )

        result = await dispatcher.dispatch_new_message(conversation, message)

        assert result is not None
        assert result.suppressed == "quiet_hours"
        email.send_message.assert_not_called()
        _, total = await NotificationRepository(test_db).list_for_user(1, False, 10, 0)
        assert total == 0

    @pytest.mark.asyncio
    async def test_failing_email_does_not_stop_in_app(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        conversation_factory: Any,
        marketplace: AsyncMock,
    ) -> None:
        conversation, message = await self._send(test_db, conversation_factory)
        email = email_client()
        email.send_message.side_effect = RuntimeError("provider down")
        dispatcher = NotificationDispatcher(
            session_factory,
            email_client=email,
            marketplace=marketplace,
            clock=lambda: NOON,
        )

        result = await dispatcher.dispatch_new_message(conversation, message)

        assert result is not None
        assert result.email is False
        assert result.in_app is True

    @pytest.mark.asyncio
    async def test_gone_push_subscription_deactivated(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        conversation_factory: Any,
    ) -> None:
        """Test that a 410 from the push service retires the subscription."""
        conversation, message = await self._send(test_db, conversation_factory)
        repo = PushSubscriptionRepository(test_db)
        await repo.upsert(1, "https://push.example.com/gone", "k", "a")
        await repo.upsert(1, "https://push.example.com/live", "k", "a")
        await test_db.commit()

        push = push_client()

        async def send(request: Any) -> dict:
            if request.endpoint.endswith("gone"):
                raise PushSubscriptionGoneError(request.endpoint, 410)
            return {"status_code": 201}

        push.send_message.side_effect = send
        dispatcher = NotificationDispatcher(
            session_factory, push_client=push, clock=lambda: NOON
        )

        result = await dispatcher.dispatch_new_message(conversation, message)

        assert result is not None
        assert result.push == 1
        active = await PushSubscriptionRepository(test_db).list_active(1)
        assert [s.endpoint for s in active] == ["https://push.example.com/live"]

    @pytest.mark.asyncio
    async def test_system_messages_not_dispatched(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        conversation_factory: Any,
    ) -> None:
        conversation = await conversation_factory()
        notice = await SendMessageService(test_db).create_system_message(
            conversation.id, "article_sold", "Sold"
        )

        result = await NotificationDispatcher(session_factory).dispatch_new_message(
            conversation, notice
        )

        assert result is None


class TestSystemNotifications:
    @pytest.mark.asyncio
    async def test_system_notification_is_broadcast(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        bus: InMemoryEventBus,
        broadcaster: Broadcaster,
    ) -> None:
        dispatcher = NotificationDispatcher(session_factory, broadcaster=broadcaster)

        async with bus.subscribe([user_channel(3)]) as sub:
            notification = await dispatcher.send_system_notification(
                3, "system", "Maintenance", "Back soon"
            )
            event = await sub.next_event(timeout=1.0)

        assert event is not None
        assert event.type == EventType.NOTIFICATION
        assert event.payload["notification"]["id"] == notification.id

    @pytest.mark.asyncio
    async def test_bulk_notification_batches(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """Test that users are processed in batches with a pause between."""
        dispatcher = NotificationDispatcher(session_factory)

        with (
            patch.object(config, "BULK_NOTIFICATION_BATCH_SIZE", 2),
            patch(
                "market_chat.services.notification_dispatcher.asyncio.sleep",
                new_callable=AsyncMock,
            ) as mock_sleep,
        ):
            sent = await dispatcher.send_bulk_notification(
                [1, 2, 3, 4, 5], "Update", "New features"
            )

        assert sent == 5
        assert mock_sleep.await_count == 2
        _, total = await NotificationRepository(test_db).list_for_user(4, False, 10, 0)
        assert total == 1
