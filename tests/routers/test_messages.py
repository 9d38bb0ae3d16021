from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from market_chat.exceptions import PermissionDeniedError, ValidationError
from market_chat.models.api.messages import (
    MarkManyReadResponse,
    MessageResponse,
    MessageType,
    ReactionGroup,
    SearchFilters,
    SearchResult,
)

SELLER = {"X-User-Id": "1"}
ACTIONS = "market_chat.services.message_action_service.MessageActionService"
SEARCH = "market_chat.services.search_messages_service.SearchMessagesService"


class TestMessagesRouter:
    """Unit tests for the messages router endpoints."""

    @pytest.fixture
    def sample_message(self) -> MessageResponse:
        return MessageResponse(
            id=11,
            conversation_id=7,
            sender_id=1,
            content="Still available",
            message_type=MessageType.TEXT,
            created_at=datetime.now(timezone.utc),
        )

    def test_search_passes_filters(
        self, client: TestClient, sample_message: MessageResponse
    ) -> None:
        result = SearchResult(
            messages=[sample_message], total=1, page=1, limit=20, total_pages=1
        )
        with patch(
            f"{SEARCH}.search", new_callable=AsyncMock, return_value=result
        ) as mock_search:
            response = client.get(
                "/api/messages/search?q=available&conversation_id=7&message_type=text",
                headers=SELLER,
            )

        assert response.status_code == 200
        assert response.json()["total"] == 1
        args, kwargs = mock_search.call_args
        assert args[:2] == (1, "available")
        assert args[2] == SearchFilters(
            conversation_id=7, message_type=MessageType.TEXT
        )
        assert kwargs == {"page": 1, "limit": 20}

    def test_search_short_query(self, client: TestClient) -> None:
        with patch(
            f"{SEARCH}.search",
            new_callable=AsyncMock,
            side_effect=ValidationError("Search query must be at least 2 characters"),
        ):
            response = client.get("/api/messages/search?q=a", headers=SELLER)

        assert response.status_code == 400

    def test_search_requires_query(self, client: TestClient) -> None:
        response = client.get("/api/messages/search", headers=SELLER)
        assert response.status_code == 422

    def test_mark_many_read(self, client: TestClient) -> None:
        with patch(
            f"{ACTIONS}.mark_many_read",
            new_callable=AsyncMock,
            return_value=MarkManyReadResponse(marked_read=2, conversation_ids=[7]),
        ) as mock_read:
            response = client.post(
                "/api/messages/read", json={"message_ids": [11, 12]}, headers=SELLER
            )

        assert response.status_code == 200
        assert response.json() == {"marked_read": 2, "conversation_ids": [7]}
        mock_read.assert_called_once_with([11, 12], 1)

    def test_mark_many_read_requires_ids(self, client: TestClient) -> None:
        response = client.post(
            "/api/messages/read", json={"message_ids": []}, headers=SELLER
        )
        assert response.status_code == 422

    def test_delivered(self, client: TestClient) -> None:
        with patch(
            f"{ACTIONS}.mark_delivered", new_callable=AsyncMock, return_value=3
        ):
            response = client.post(
                "/api/messages/delivered",
                json={"message_ids": [1, 2, 3]},
                headers=SELLER,
            )

        assert response.status_code == 200
        assert response.json() == {"delivered": 3}

    def test_edit_message(
        self, client: TestClient, sample_message: MessageResponse
    ) -> None:
        edited = sample_message.model_copy(
            update={"content": "Sold, sorry", "is_edited": True}
        )
        with patch(
            f"{ACTIONS}.edit", new_callable=AsyncMock, return_value=edited
        ) as mock_edit:
            response = client.put(
                "/api/messages/11", json={"content": "Sold, sorry"}, headers=SELLER
            )

        assert response.status_code == 200
        assert response.json()["is_edited"] is True
        mock_edit.assert_called_once_with(11, 1, "Sold, sorry")

    def test_edit_someone_elses_message(self, client: TestClient) -> None:
        with patch(
            f"{ACTIONS}.edit",
            new_callable=AsyncMock,
            side_effect=PermissionDeniedError("You can only edit your own messages"),
        ):
            response = client.put(
                "/api/messages/11",
                json={"content": "Hacked"},
                headers={"X-User-Id": "2"},
            )

        assert response.status_code == 403

    def test_delete_message(
        self, client: TestClient, sample_message: MessageResponse
    ) -> None:
        deleted = sample_message.model_copy(update={"content": "[Message deleted]"})
        with patch(
            f"{ACTIONS}.soft_delete", new_callable=AsyncMock, return_value=deleted
        ):
            response = client.delete("/api/messages/11", headers=SELLER)

        assert response.status_code == 200
        assert response.json()["content"] == "[Message deleted]"

    def test_reactions(self, client: TestClient) -> None:
        groups = [ReactionGroup(emoji="👍", count=1, user_ids=[1])]
        with (
            patch(
                f"{ACTIONS}.add_reaction", new_callable=AsyncMock, return_value=groups
            ) as mock_add,
            patch(
                f"{ACTIONS}.remove_reaction", new_callable=AsyncMock, return_value=[]
            ) as mock_remove,
        ):
            added = client.post(
                "/api/messages/11/reactions", json={"emoji": "👍"}, headers=SELLER
            )
            removed = client.delete(
                "/api/messages/11/reactions", params={"emoji": "👍"}, headers=SELLER
            )

        assert added.status_code == 200
        assert added.json()["reactions"][0]["count"] == 1
        assert removed.json() == {"message_id": 11, "reactions": []}
        mock_add.assert_called_once_with(11, 1, "👍")
        mock_remove.assert_called_once_with(11, 1, "👍")

    def test_service_error_handling(self, client: TestClient) -> None:
        with patch(
            f"{ACTIONS}.mark_read",
            new_callable=AsyncMock,
            side_effect=Exception("Service error"),
        ):
            response = client.put("/api/messages/11/read", headers=SELLER)

        assert response.status_code == 500
        assert "Internal server error" in response.json()["detail"]
