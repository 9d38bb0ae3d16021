"""HMAC-signed tokens for one-click email unsubscribe links."""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Optional


class InvalidUnsubscribeToken(Exception):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def _sign(secret: str, message: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def make_token(user_id: int, secret: str, issued_at: Optional[datetime] = None) -> str:
    issued_at = issued_at or datetime.now(timezone.utc)
    message = f"unsubscribe:{user_id}:{int(issued_at.timestamp())}"
    raw = f"{message}:{_sign(secret, message)}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def read_token(
    token: str, secret: str, max_age: int, now: Optional[datetime] = None
) -> int:
    """Return the user id carried by ``token`` or raise InvalidUnsubscribeToken."""
    padding = "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode((token + padding).encode("utf-8")).decode(
            "utf-8"
        )
        purpose, user_id, issued, signature = raw.split(":")
        issued_ts = int(issued)
        parsed_user_id = int(user_id)
    except ValueError as exc:
        raise InvalidUnsubscribeToken("invalid_format") from exc

    if purpose != "unsubscribe":
        raise InvalidUnsubscribeToken("invalid_format")
    expected = _sign(secret, f"{purpose}:{user_id}:{issued}")
    if not hmac.compare_digest(expected, signature):
        raise InvalidUnsubscribeToken("invalid_signature")

    now = now or datetime.now(timezone.utc)
    if now.timestamp() - issued_ts > max_age:
        raise InvalidUnsubscribeToken("expired")
    return parsed_user_id
