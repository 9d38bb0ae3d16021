from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, TypeVar

from pydantic import BaseModel

RequestType = TypeVar("RequestType", bound=BaseModel)


class BaseProviderClient(ABC, Generic[RequestType]):
    """Abstract base class for outbound notification channels."""

    @abstractmethod
    async def send_message(self, request: RequestType) -> Dict[str, Any]:
        """Send message and return provider response data.

        Returns:
            Dict containing the raw provider response data.
            Each provider handles its own response format.
        """

    @abstractmethod
    def get_provider_type(self) -> str:
        """Return channel name: 'email' or 'push'."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Return False when credentials are missing and sends should be skipped."""

    @abstractmethod
    def extract_status(self, response_data: Dict[str, Any]) -> str:
        """Extract the delivery status from the response data.

        Args:
            response_data: Raw response data from the provider

        Returns:
            Normalized status ('sent', 'pending', 'failed', etc.)
        """
