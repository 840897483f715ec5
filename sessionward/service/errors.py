from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidToken(AuthenticationError):
    """Bearer token is malformed, badly signed, expired or carries the wrong claims.

    Expiry is deliberately not distinguished from tampering; the reason is only
    recorded in logs.
    """

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredToken(AuthenticationError):
    """Refresh token is unknown, revoked or past its expiry."""

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DeviceMismatch(AuthenticationError):
    """Refresh token presented with a session id it was not issued to."""

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentials(AuthenticationError):
    """Login rejected; covers wrong password and unusable accounts alike."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class OtpError(ServiceError):
    """Base for one-time passcode failures; always safe to show to the user."""

    reason: str = "otp_error"

    def __init__(
        self, message: str, *, retry_after_seconds: Optional[int] = None, **extra
    ) -> None:
        detail = {"reason": self.reason, **extra}
        if retry_after_seconds is not None:
            detail["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, detail=detail)
        self.retry_after_seconds = retry_after_seconds


class Cooldown(OtpError):
    status_code = 429
    error_code = "rate_limited"
    reason = "cooldown"


class ResendTooSoon(OtpError):
    status_code = 429
    error_code = "rate_limited"
    reason = "resend_too_soon"


class ResendQuotaExceeded(OtpError):
    status_code = 429
    error_code = "rate_limited"
    reason = "resend_quota_exceeded"


class TooManyAttempts(OtpError):
    status_code = 429
    error_code = "rate_limited"
    reason = "too_many_attempts"


class IncorrectCode(OtpError):
    reason = "incorrect_code"


class Expired(OtpError):
    reason = "expired"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidToken",
    "InvalidOrExpiredToken",
    "DeviceMismatch",
    "InvalidCredentials",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "OtpError",
    "Cooldown",
    "ResendTooSoon",
    "ResendQuotaExceeded",
    "TooManyAttempts",
    "IncorrectCode",
    "Expired",
]
