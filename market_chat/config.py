"""Environment-driven settings for the messaging service."""

import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


ENV = os.getenv("ENV")
ENV_IS_PROD = ENV == "prod"
COMMIT_HASH = os.getenv("COMMIT_HASH")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

APP_ADDR = os.getenv("HOST", "0.0.0.0")
APP_PORT = _int_env("PORT", 8000)

# Optional: when unset the bus and TTL cache run in-process
REDIS_URL = os.getenv("REDIS_URL")

# Realtime
PRESENCE_TTL_SECONDS = _int_env("PRESENCE_TTL_SECONDS", 300)
STALE_CONNECTION_SECONDS = _int_env("STALE_CONNECTION_SECONDS", 300)
TYPING_TTL_SECONDS = _int_env("TYPING_TTL_SECONDS", 10)
SSE_KEEPALIVE_SECONDS = _float_env("SSE_KEEPALIVE_SECONDS", 30.0)
SSE_POLL_TIMEOUT_SECONDS = _float_env("SSE_POLL_TIMEOUT_SECONDS", 1.0)

# Attachments
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads/messages")
PUBLIC_UPLOAD_URL = os.getenv("PUBLIC_UPLOAD_URL", "/uploads/messages")
MAX_IMAGE_SIZE_BYTES = _int_env("MAX_IMAGE_SIZE_BYTES", 5 * 1024 * 1024)
MAX_FILE_SIZE_BYTES = _int_env("MAX_FILE_SIZE_BYTES", 10 * 1024 * 1024)
MAX_IMAGE_DIMENSION = _int_env("MAX_IMAGE_DIMENSION", 1920)
THUMBNAIL_SIZE = _int_env("THUMBNAIL_SIZE", 200)

# Messages
MAX_MESSAGE_LENGTH = _int_env("MAX_MESSAGE_LENGTH", 2000)

# Notifications
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
EMAIL_PROVIDER_URL = os.getenv("EMAIL_PROVIDER_URL", "http://localhost:8002")
EMAIL_PROVIDER_API_KEY = os.getenv("EMAIL_PROVIDER_API_KEY", "")
NOTIFICATION_FROM_EMAIL = os.getenv("NOTIFICATION_FROM_EMAIL", "noreply@bazar.com")
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_CLAIMS_EMAIL = os.getenv("VAPID_CLAIMS_EMAIL", "mailto:admin@bazar.com")
UNSUBSCRIBE_SECRET = os.getenv("UNSUBSCRIBE_SECRET", "change-me")
UNSUBSCRIBE_TOKEN_MAX_AGE_SECONDS = _int_env(
    "UNSUBSCRIBE_TOKEN_MAX_AGE_SECONDS", 30 * 24 * 60 * 60
)
BULK_NOTIFICATION_BATCH_SIZE = _int_env("BULK_NOTIFICATION_BATCH_SIZE", 100)
BULK_NOTIFICATION_PAUSE_SECONDS = _float_env("BULK_NOTIFICATION_PAUSE_SECONDS", 0.1)

# Marketplace collaborator (articles and users)
MARKETPLACE_API_URL = os.getenv("MARKETPLACE_API_URL", "http://localhost:8080")
MARKETPLACE_API_KEY = os.getenv("MARKETPLACE_API_KEY", "")
