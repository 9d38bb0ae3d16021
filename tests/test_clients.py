from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pywebpush import WebPushException

from market_chat.clients.base_provider_client import BaseProviderClient
from market_chat.clients.email_provider_client import EmailMessage, EmailProviderClient
from market_chat.clients.marketplace_client import MarketplaceClient, UserInfo
from market_chat.clients.push_provider_client import (
    PushMessage,
    PushProviderClient,
    PushSubscriptionGoneError,
)


def mock_http_client(method: str, response: MagicMock) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.__aenter__.return_value = mock_client
    mock_client.__aexit__.return_value = None
    getattr(mock_client, method).return_value = response
    return mock_client


class TestBaseProviderClient:
    """Unit tests for BaseProviderClient abstract base class."""

    def test_base_provider_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            BaseProviderClient()  # type: ignore

    def test_missing_is_configured_is_rejected(self) -> None:
        """Test that every channel must say whether it is configured."""

        class HalfProvider(BaseProviderClient):
            async def send_message(self, request: Any) -> Dict[str, Any]:
                return {}

            def get_provider_type(self) -> str:
                return "half"

            def extract_status(self, response_data: Dict[str, Any]) -> str:
                return "sent"

        with pytest.raises(TypeError, match=r"Can't instantiate abstract class"):
            HalfProvider()  # type: ignore


class TestEmailProviderClient:
    """Unit tests for EmailProviderClient."""

    @pytest.fixture
    def provider(self) -> EmailProviderClient:
        return EmailProviderClient(
            base_url="http://test-email-provider.com", api_key="test-api-key"
        )

    @pytest.fixture
    def email(self) -> EmailMessage:
        return EmailMessage(
            to_email="seller@example.com",
            to_name="Sam",
            from_email="noreply@market.example.com",
            subject="New message from Bea",
            html="<p>Is it still available?</p>",
            text="Is it still available?",
        )

    def test_provider_type_and_configuration(
        self, provider: EmailProviderClient
    ) -> None:
        assert provider.get_provider_type() == "email"
        assert provider.is_configured() is True
        assert EmailProviderClient("", "key").is_configured() is False

    @pytest.mark.asyncio
    async def test_send_message_success(
        self, provider: EmailProviderClient, email: EmailMessage
    ) -> None:
        mock_response = MagicMock()
        mock_response.content = b'{"status": "processed"}'
        mock_response.json.return_value = {"status": "processed"}
        mock_response.raise_for_status.return_value = None

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client("post", mock_response)
            mock_client_class.return_value = mock_client

            result = await provider.send_message(email)

            assert result == {"status": "processed"}
            call_args = mock_client.post.call_args
            assert call_args[0][0] == "http://test-email-provider.com/mail/send"
            payload = call_args[1]["json"]
            assert payload["personalizations"][0]["to"] == [
                {"email": "seller@example.com", "name": "Sam"}
            ]
            assert payload["subject"] == "New message from Bea"
            assert [c["type"] for c in payload["content"]] == [
                "text/plain",
                "text/html",
            ]
            headers = call_args[1]["headers"]
            assert headers["Authorization"] == "Bearer test-api-key"

    @pytest.mark.asyncio
    async def test_send_message_empty_body(
        self, provider: EmailProviderClient, email: EmailMessage
    ) -> None:
        """Test that a 202 with no body is treated as accepted."""
        mock_response = MagicMock()
        mock_response.content = b""
        mock_response.raise_for_status.return_value = None

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = mock_http_client("post", mock_response)

            result = await provider.send_message(email)

        assert result == {}
        assert provider.extract_status(result) == "sent"

    @pytest.mark.asyncio
    async def test_send_message_http_error(
        self, provider: EmailProviderClient, email: EmailMessage
    ) -> None:
        mock_response = MagicMock()
        mock_response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "401 Unauthorized", request=MagicMock(), response=MagicMock()
        )

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = mock_http_client("post", mock_response)

            with pytest.raises(httpx.HTTPStatusError):
                await provider.send_message(email)

    @pytest.mark.parametrize(
        "status,expected",
        [
            ("processed", "sent"),
            ("delivered", "sent"),
            ("deferred", "pending"),
            ("bounce", "failed"),
            ("mystery", "unknown"),
        ],
    )
    def test_extract_status(
        self, provider: EmailProviderClient, status: str, expected: str
    ) -> None:
        assert provider.extract_status({"status": status}) == expected


class TestMarketplaceClient:
    """Unit tests for MarketplaceClient."""

    @pytest.fixture
    def client(self) -> MarketplaceClient:
        return MarketplaceClient("http://marketplace.test/", "market-key")

    @pytest.mark.asyncio
    async def test_get_article(self, client: MarketplaceClient) -> None:
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {
            "id": 42,
            "user_id": 1,
            "title": "Vintage bicycle",
            "price": 120.0,
        }

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_http_client("get", mock_response)
            mock_client_class.return_value = mock_client

            article = await client.get_article(42)

            assert article is not None
            assert article.seller_id == 1
            assert article.title == "Vintage bicycle"
            call_args = mock_client.get.call_args
            assert call_args[0][0] == "http://marketplace.test/articles/42"
            assert call_args[1]["headers"] == {"Authorization": "Bearer market-key"}

    @pytest.mark.asyncio
    async def test_unknown_user(self, client: MarketplaceClient) -> None:
        mock_response = MagicMock()
        mock_response.status_code = 404

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = mock_http_client("get", mock_response)

            assert await client.get_user(99) is None

    def test_display_name_fallbacks(self) -> None:
        assert UserInfo(id=1, first_name="Sam", last_name="Lee").display_name == (
            "Sam Lee"
        )
        assert UserInfo(id=1, username="samlee").display_name == "samlee"
        assert UserInfo(id=1).display_name == "User 1"


class TestPushProviderClient:
    """Unit tests for PushProviderClient."""

    @pytest.fixture
    def provider(self) -> PushProviderClient:
        return PushProviderClient("private-key\n", "mailto:ops@market.example.com")

    @pytest.fixture
    def push(self) -> PushMessage:
        return PushMessage(
            endpoint="https://push.example.com/abc",
            p256dh_key="p256dh",
            auth_key="auth",
            payload={"title": "New message", "body": "Hi"},
        )

    @pytest.mark.asyncio
    async def test_send_message_success(
        self, provider: PushProviderClient, push: PushMessage
    ) -> None:
        with patch(
            "market_chat.clients.push_provider_client.webpush",
            return_value=MagicMock(status_code=201),
        ) as mock_webpush:
            result = await provider.send_message(push)

        assert result == {"status_code": 201}
        assert provider.extract_status(result) == "sent"
        kwargs = mock_webpush.call_args.kwargs
        assert kwargs["subscription_info"]["keys"] == {
            "p256dh": "p256dh",
            "auth": "auth",
        }
        assert kwargs["vapid_private_key"] == "private-key"
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@market.example.com"}
        assert '"title": "New message"' in kwargs["data"]

    @pytest.mark.asyncio
    async def test_gone_subscription(
        self, provider: PushProviderClient, push: PushMessage
    ) -> None:
        error = WebPushException("Gone", response=MagicMock(status_code=410))

        with patch(
            "market_chat.clients.push_provider_client.webpush", side_effect=error
        ):
            with pytest.raises(PushSubscriptionGoneError) as exc_info:
                await provider.send_message(push)

        assert exc_info.value.status_code == 410
        assert exc_info.value.endpoint == "https://push.example.com/abc"

    @pytest.mark.asyncio
    async def test_other_push_errors_propagate(
        self, provider: PushProviderClient, push: PushMessage
    ) -> None:
        error = WebPushException("Server error", response=MagicMock(status_code=500))

        with patch(
            "market_chat.clients.push_provider_client.webpush", side_effect=error
        ):
            with pytest.raises(WebPushException):
                await provider.send_message(push)

    def test_configuration_and_status(self, provider: PushProviderClient) -> None:
        assert provider.get_provider_type() == "push"
        assert provider.is_configured() is True
        assert PushProviderClient("", "mailto:x@y.z").is_configured() is False
        assert provider.extract_status({"status_code": 404}) == "expired"
        assert provider.extract_status({"status_code": 500}) == "failed"
