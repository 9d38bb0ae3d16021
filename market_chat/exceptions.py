"""
Domain exceptions for the messaging engine.

Services raise these; the API layer turns them into HTTP responses through
``to_http_exception`` so validation, authorization and lookup failures stay
distinguishable for clients.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class MessagingError(Exception):
    """Base exception for all messaging domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationError(MessagingError):
    """Raised when input fails validation before anything is persisted."""

    status_code = status.HTTP_400_BAD_REQUEST


class PermissionDeniedError(MessagingError):
    """Raised when the caller may not act on a conversation, message or file."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(MessagingError):
    """Raised when a requested resource does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(MessagingError):
    """Raised when a write collides with existing state."""

    status_code = status.HTTP_409_CONFLICT
