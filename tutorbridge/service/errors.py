from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:

    - validation_error (400)
    - unauthorized / token_expired / token_invalid / account_locked (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - upstream_unavailable (502)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Bearer or refresh token is past its expiry (401)."""
    error_code = "token_expired"


class TokenInvalidError(AuthenticationError):
    """Token is malformed, revoked, or unknown (401)."""
    error_code = "token_invalid"


class AccountLockedError(AuthenticationError):
    """Too many failed logins; the account is temporarily locked (401)."""
    error_code = "account_locked"

    def __init__(self, retry_after_seconds: int, message: str = "account temporarily locked") -> None:
        super().__init__(message, detail={"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class ForbiddenError(ServiceError):
    """Access denied - the resource belongs to someone else (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class UpstreamUnavailableError(ServiceError):
    """Generation service failed, timed out, or returned garbage (502)."""
    status_code = 502
    error_code = "upstream_unavailable"


class ServerError(ServiceError):
    """Unexpected internal failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenInvalidError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "UpstreamUnavailableError",
    "ServerError",
]
