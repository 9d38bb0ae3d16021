from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from market_chat.exceptions import PermissionDeniedError
from market_chat.models.api.realtime import PresenceResponse

SERVICE = "market_chat.services.conversation_service.ConversationService"


class TestRealtimeRouter:
    """Unit tests for the realtime router endpoints."""

    def test_presence(self, client: TestClient) -> None:
        last_seen = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        client.app.state.registry.is_online.return_value = PresenceResponse(
            user_id=1, is_online=False, last_seen=last_seen
        )

        response = client.get("/api/realtime/presence/1", headers={"X-User-Id": "2"})

        assert response.status_code == 200
        data = response.json()
        assert data["is_online"] is False
        assert data["last_seen"].startswith("2026-03-02T12:00:00")
        client.app.state.registry.is_online.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_typing_users_exclude_caller(self, client: TestClient) -> None:
        broadcaster = client.app.state.broadcaster
        await broadcaster.set_typing(7, 1, True)
        await broadcaster.set_typing(7, 2, True)

        with patch(f"{SERVICE}.require_participant", new_callable=AsyncMock):
            response = client.get(
                "/api/realtime/conversations/7/typing", headers={"X-User-Id": "2"}
            )

        assert response.status_code == 200
        assert response.json() == {"conversation_id": 7, "typing_user_ids": [1]}

    def test_typing_users_for_outsider(self, client: TestClient) -> None:
        with patch(
            f"{SERVICE}.require_participant",
            new_callable=AsyncMock,
            side_effect=PermissionDeniedError("Not a participant"),
        ):
            response = client.get(
                "/api/realtime/conversations/7/typing", headers={"X-User-Id": "9"}
            )

        assert response.status_code == 403

    def test_stream_requires_user(self, client: TestClient) -> None:
        response = client.get("/api/realtime/stream")
        assert response.status_code == 401

    def test_websocket_rejects_anonymous(self, client: TestClient) -> None:
        """Test that the handshake is refused without a caller identity."""
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/realtime/ws"):
                pass

        assert exc_info.value.code == 1008
