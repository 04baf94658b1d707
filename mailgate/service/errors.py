from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` returned verbatim to API callers:

    - OTP_NOT_FOUND, OTP_EXPIRED, OTP_INVALID, OTP_MAX_ATTEMPTS_EXCEEDED (400)
    - OTP_COOLDOWN_ACTIVE, RATE_LIMIT_EXCEEDED (429)
    - TOKEN_INVALID, TOKEN_EXPIRED (401)
    - USER_NOT_FOUND (404)
    - EMAIL_SEND_FAILED, INTERNAL_SERVER_ERROR (500)
    - VALIDATION_ERROR (400)
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


class OtpNotFoundError(ServiceError):
    status_code = 400
    error_code = "OTP_NOT_FOUND"


class OtpExpiredError(ServiceError):
    status_code = 400
    error_code = "OTP_EXPIRED"


class OtpInvalidError(ServiceError):
    """Wrong or already-consumed code (400)."""
    status_code = 400
    error_code = "OTP_INVALID"


class OtpAttemptsExceededError(ServiceError):
    status_code = 400
    error_code = "OTP_MAX_ATTEMPTS_EXCEEDED"


class OtpCooldownError(ServiceError):
    """A code was issued too recently for this email (429)."""
    status_code = 429
    error_code = "OTP_COOLDOWN_ACTIVE"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"


class TokenInvalidError(ServiceError):
    status_code = 401
    error_code = "TOKEN_INVALID"


class TokenExpiredError(ServiceError):
    status_code = 401
    error_code = "TOKEN_EXPIRED"


class UserNotFoundError(ServiceError):
    status_code = 404
    error_code = "USER_NOT_FOUND"


class EmailSendError(ServiceError):
    """Delivery failed; the issued code stays valid and the caller may retry (500)."""
    status_code = 500
    error_code = "EMAIL_SEND_FAILED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"


__all__ = [
    "ServiceError",
    "OtpNotFoundError",
    "OtpExpiredError",
    "OtpInvalidError",
    "OtpAttemptsExceededError",
    "OtpCooldownError",
    "RateLimitedError",
    "TokenInvalidError",
    "TokenExpiredError",
    "UserNotFoundError",
    "EmailSendError",
    "ServerError",
]
