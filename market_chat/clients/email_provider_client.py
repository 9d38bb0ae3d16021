from typing import Any, Dict

import httpx
from pydantic import BaseModel

from market_chat.clients.base_provider_client import BaseProviderClient


class EmailMessage(BaseModel):
    """A rendered email ready for the provider."""

    to_email: str
    to_name: str = ""
    from_email: str
    subject: str
    html: str
    text: str


class EmailProviderClient(BaseProviderClient[EmailMessage]):
    """Email provider client using httpx."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout

    async def send_message(self, request: EmailMessage) -> Dict[str, Any]:
        """Send email message via provider API."""
        # SendGrid-style payload with plain text and HTML alternatives
        recipient: Dict[str, str] = {"email": request.to_email}
        if request.to_name:
            recipient["name"] = request.to_name
        payload = {
            "personalizations": [{"to": [recipient]}],
            "from": {"email": request.from_email},
            "subject": request.subject,
            "content": [
                {"type": "text/plain", "value": request.text},
                {"type": "text/html", "value": request.html},
            ],
        }

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/mail/send", json=payload, headers=headers
            )
            response.raise_for_status()
            data: Dict[str, Any] = response.json() if response.content else {}

            return data

    def get_provider_type(self) -> str:
        """Return 'email'."""
        return "email"

    def is_configured(self) -> bool:
        return bool(self.base_url)

    def extract_status(self, response_data: Dict[str, Any]) -> str:
        """Extract and normalize status from SendGrid-style response."""
        status = str(response_data.get("status", "processed"))

        # Normalize SendGrid status to our standard statuses
        status_mapping = {
            "pending": "pending",
            "processed": "sent",
            "dropped": "failed",
            "deferred": "pending",
            "bounce": "failed",
            "delivered": "sent",
            "blocked": "failed",
        }

        return status_mapping.get(status, "unknown")
