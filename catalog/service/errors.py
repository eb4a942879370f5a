from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthFailure(str, Enum):
    """Why a protected request was rejected. Logged, never sent to clients."""

    MISSING_CREDENTIALS = "missing_credentials"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_TOKEN = "invalid_token"
    SESSION_INVALID = "session_invalid"
    TOKEN_REVOKED = "token_revoked"
    SESSION_REVOKED_BY_LOGOUT_ALL = "session_revoked_by_logout_all"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str = "unauthorized",
        *,
        reason: Optional[AuthFailure] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class InvalidTokenError(AuthenticationError):
    """Token failed signature, algorithm, expiry or claim checks (401)."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        kwargs.setdefault("reason", AuthFailure.INVALID_TOKEN)
        super().__init__(message, **kwargs)


class SessionNotFoundError(AuthenticationError):
    """Session record is absent from the cache store (401)."""

    def __init__(self, message: str = "session not found", **kwargs) -> None:
        kwargs.setdefault("reason", AuthFailure.SESSION_INVALID)
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""

    def __init__(self, message: str = "session expired", **kwargs) -> None:
        kwargs.setdefault("reason", AuthFailure.SESSION_INVALID)
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AuthorizationError(NotFoundError):
    """Resource exists but belongs to another user.

    Surfaces as 404 so non-owners cannot confirm the resource exists.
    """


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class BackendUnavailableError(ServiceError):
    """Persistence or cache backend unreachable (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthFailure",
    "AuthenticationError",
    "InvalidTokenError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "NotFoundError",
    "AuthorizationError",
    "ConflictError",
    "BackendUnavailableError",
]
