from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from market_chat.exceptions import NotFoundError, ValidationError
from market_chat.models.api.notifications import (
    NotificationList,
    NotificationResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    PushSubscriptionResponse,
)

USER = {"X-User-Id": "1"}
SERVICE = (
    "market_chat.services.notification_settings_service.NotificationSettingsService"
)


class TestNotificationsRouter:
    """Unit tests for the notifications router endpoints."""

    def test_get_settings(self, client: TestClient) -> None:
        with patch(
            f"{SERVICE}.get_settings",
            new_callable=AsyncMock,
            return_value=NotificationSettingsResponse(user_id=1),
        ):
            response = client.get("/api/notifications/settings", headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["email_notifications"] is True
        assert data["notification_frequency"] == "instant"

    def test_update_settings(self, client: TestClient) -> None:
        with patch(
            f"{SERVICE}.update_settings",
            new_callable=AsyncMock,
            return_value=NotificationSettingsResponse(
                user_id=1, push_notifications=False
            ),
        ) as mock_update:
            response = client.put(
                "/api/notifications/settings",
                json={"push_notifications": False},
                headers=USER,
            )

        assert response.status_code == 200
        assert response.json()["push_notifications"] is False
        mock_update.assert_called_once_with(
            1, NotificationSettingsUpdate(push_notifications=False)
        )

    def test_update_settings_invalid_quiet_hours(self, client: TestClient) -> None:
        with patch(
            f"{SERVICE}.update_settings",
            new_callable=AsyncMock,
            side_effect=ValidationError("Quiet hours must be set together"),
        ):
            response = client.put(
                "/api/notifications/settings",
                json={"quiet_hours_start": "22:00"},
                headers=USER,
            )

        assert response.status_code == 400

    def test_subscribe_push(self, client: TestClient) -> None:
        subscription = PushSubscriptionResponse(
            id=1,
            user_id=1,
            endpoint="https://push.example.com/1",
            p256dh_key="p256dh",
            auth_key="auth",
            is_active=True,
        )
        with patch(
            f"{SERVICE}.subscribe_push",
            new_callable=AsyncMock,
            return_value=subscription,
        ):
            response = client.post(
                "/api/notifications/push/subscriptions",
                json={
                    "endpoint": "https://push.example.com/1",
                    "keys": {"p256dh": "p256dh", "auth": "auth"},
                },
                headers=USER,
            )

        assert response.status_code == 201
        assert response.json()["endpoint"] == "https://push.example.com/1"

    def test_subscribe_push_missing_keys(self, client: TestClient) -> None:
        response = client.post(
            "/api/notifications/push/subscriptions",
            json={"endpoint": "https://push.example.com/1"},
            headers=USER,
        )
        assert response.status_code == 422

    def test_unsubscribe_unknown_push(self, client: TestClient) -> None:
        with patch(
            f"{SERVICE}.unsubscribe_push",
            new_callable=AsyncMock,
            side_effect=NotFoundError("Push subscription not found"),
        ):
            response = client.request(
                "DELETE",
                "/api/notifications/push/subscriptions",
                json={"endpoint": "https://push.example.com/unknown"},
                headers=USER,
            )

        assert response.status_code == 404

    def test_public_key_not_configured(self, client: TestClient) -> None:
        with patch(
            f"{SERVICE}.vapid_public_key",
            side_effect=NotFoundError("Push notifications are not configured"),
        ):
            response = client.get("/api/notifications/push/public-key")

        assert response.status_code == 404

    def test_list_notifications(self, client: TestClient) -> None:
        notification = NotificationResponse(
            id=5,
            user_id=1,
            type="new_message",
            title="New message from Bea",
            message="Is it still available?",
            created_at=datetime.now(timezone.utc),
        )
        with patch(
            f"{SERVICE}.list_notifications",
            new_callable=AsyncMock,
            return_value=NotificationList(
                notifications=[notification], total=1, page=1, limit=20
            ),
        ) as mock_list:
            response = client.get(
                "/api/notifications?unread_only=true", headers=USER
            )

        assert response.status_code == 200
        assert response.json()["notifications"][0]["title"] == "New message from Bea"
        mock_list.assert_called_once_with(1, unread_only=True, page=1, limit=20)

    def test_mark_all_read(self, client: TestClient) -> None:
        with patch(f"{SERVICE}.mark_all_read", new_callable=AsyncMock, return_value=3):
            response = client.put("/api/notifications/read-all", headers=USER)

        assert response.status_code == 200
        assert response.json() == {"marked_read": 3}

    def test_mark_someone_elses_notification(self, client: TestClient) -> None:
        with patch(
            f"{SERVICE}.mark_read",
            new_callable=AsyncMock,
            side_effect=NotFoundError("Notification 5 not found"),
        ):
            response = client.put("/api/notifications/5/read", headers=USER)

        assert response.status_code == 404

    def test_unsubscribe_link_needs_no_identity(self, client: TestClient) -> None:
        """Test that the one-click email link works without X-User-Id."""
        with patch(
            f"{SERVICE}.unsubscribe_email", new_callable=AsyncMock, return_value=7
        ) as mock_unsubscribe:
            response = client.get("/api/notifications/unsubscribe?token=abc")

        assert response.status_code == 200
        assert response.json() == {"user_id": 7, "email_notifications": False}
        mock_unsubscribe.assert_called_once_with("abc")

    def test_unsubscribe_bad_token(self, client: TestClient) -> None:
        with patch(
            f"{SERVICE}.unsubscribe_email",
            new_callable=AsyncMock,
            side_effect=ValidationError("Invalid unsubscribe link", code="expired"),
        ):
            response = client.get("/api/notifications/unsubscribe?token=abc")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "expired"
