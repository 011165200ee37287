from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a machine-readable
    ``error_code`` that clients switch on:

    - INVALID_PHONE (400)
    - RATE_LIMITED (429)
    - INVALID_CODE (400)
    - INVALID_TOKEN (401)
    - SESSION_EXPIRED (401)
    - INVALID_REFRESH_TOKEN (401)
    - USER_NOT_FOUND (401, 404 on profile reads)
    - NOT_FOUND (404)
    - VALIDATION_ERROR (400)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Required fields missing or malformed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class InvalidPhoneError(ValidationError):
    """Phone number missing or too short (400)."""
    error_code = "INVALID_PHONE"


class InvalidCodeError(ServiceError):
    """No usable verification code matched (400).

    Wrong, expired and already-used codes all raise this same error.
    """
    status_code = 400
    error_code = "INVALID_CODE"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "INVALID_TOKEN"


class InvalidTokenError(AuthenticationError):
    """Access token missing, tampered, or expired (401)."""
    pass


class SessionExpiredError(AuthenticationError):
    """No live session row backs an otherwise valid access token (401)."""
    error_code = "SESSION_EXPIRED"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token unknown, revoked, or expired (401)."""
    error_code = "INVALID_REFRESH_TOKEN"


class UserNotFoundError(AuthenticationError):
    """Token claims reference a user that no longer exists (401)."""
    error_code = "USER_NOT_FOUND"


class NotFoundError(ServiceError):
    """Requested resource not found or not owned by the caller (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class InternalError(ServiceError):
    """Unexpected persistence or collaborator failure (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidPhoneError",
    "InvalidCodeError",
    "AuthenticationError",
    "InvalidTokenError",
    "SessionExpiredError",
    "InvalidRefreshTokenError",
    "UserNotFoundError",
    "NotFoundError",
    "RateLimitedError",
    "InternalError",
]
