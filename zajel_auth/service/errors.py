from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (400/401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - channel_unavailable (503)
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


class CaptchaFailedError(ValidationError):
    """CAPTCHA token rejected or missing (400)."""

    def __init__(self, message: str = "CAPTCHA verification failed.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(ValidationError):
    """Submitted verification code does not match (400)."""
    pass


class AuthenticationError(ServiceError):
    """Bad or missing token (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identity or wrong password, reported identically (400)."""
    status_code = 400

    def __init__(self, message: str = "Invalid login credentials.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotVerifiedError(ForbiddenError):
    """Email address not yet confirmed (403)."""

    def __init__(self, message: str = "Account not verified.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email, phone or username (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Backoff window not yet elapsed (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, remaining_seconds: int, message: Optional[str] = None, **kwargs) -> None:
        self.remaining_seconds = remaining_seconds
        super().__init__(
            message
            or f"Please wait {remaining_seconds} seconds before requesting another code.",
            **kwargs,
        )


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ChannelUnavailableError(ServiceError):
    """Email/SMS provider not configured or failing (503)."""
    status_code = 503
    error_code = "channel_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "CaptchaFailedError",
    "InvalidCodeError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "NotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ChannelUnavailableError",
]
