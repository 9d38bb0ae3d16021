import asyncio
import json
import logging
from typing import Any, Dict

from pydantic import BaseModel
from pywebpush import WebPushException, webpush

from market_chat.clients.base_provider_client import BaseProviderClient

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = (404, 410)


class PushSubscriptionGoneError(Exception):
    """The push service reports the subscription no longer exists."""

    def __init__(self, endpoint: str, status_code: int):
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(f"Push subscription gone ({status_code}): {endpoint}")


class PushMessage(BaseModel):
    """One encrypted web push delivery to a single subscription."""

    endpoint: str
    p256dh_key: str
    auth_key: str
    payload: Dict[str, Any]
    ttl: int = 86400


class PushProviderClient(BaseProviderClient[PushMessage]):
    """Web push client using pywebpush with VAPID authentication."""

    def __init__(self, vapid_private_key: str, vapid_claims_email: str):
        self.vapid_private_key = vapid_private_key
        self.vapid_claims_email = vapid_claims_email

    async def send_message(self, request: PushMessage) -> Dict[str, Any]:
        """Send a push message; raises PushSubscriptionGoneError on 404/410."""
        try:
            # pywebpush is blocking
            response = await asyncio.to_thread(
                webpush,
                subscription_info={
                    "endpoint": request.endpoint,
                    "keys": {"p256dh": request.p256dh_key, "auth": request.auth_key},
                },
                data=json.dumps(request.payload),
                vapid_private_key=self.vapid_private_key.strip(),
                vapid_claims={"sub": self.vapid_claims_email},
                ttl=request.ttl,
            )
        except WebPushException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            if status_code in GONE_STATUS_CODES:
                raise PushSubscriptionGoneError(request.endpoint, status_code) from exc
            raise

        return {"status_code": getattr(response, "status_code", 201)}

    def get_provider_type(self) -> str:
        """Return 'push'."""
        return "push"

    def is_configured(self) -> bool:
        return bool(self.vapid_private_key)

    def extract_status(self, response_data: Dict[str, Any]) -> str:
        status_code = int(response_data.get("status_code", 0))
        if 200 <= status_code < 300:
            return "sent"
        if status_code in GONE_STATUS_CODES:
            return "expired"
        return "failed"
