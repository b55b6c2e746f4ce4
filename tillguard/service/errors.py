from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    The API layer renders them into the response envelope unchanged, so the
    codes below are part of the public contract:

    - invalid_credentials, token_missing, token_invalid, token_expired,
      token_blacklisted, refresh_token_invalid, session_expired (401)
    - account_disabled, account_locked, csrf_missing, csrf_mismatch,
      csrf_expired, insufficient_permissions (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - internal_error (500/503)
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


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenMissingError(AuthenticationError):
    error_code = "token_missing"

    def __init__(self, message: str = "Authentication token missing", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenBlacklistedError(AuthenticationError):
    error_code = "token_blacklisted"

    def __init__(self, message: str = "Token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenInvalidError(AuthenticationError):
    error_code = "refresh_token_invalid"

    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    error_code = "session_expired"

    def __init__(self, message: str = "Session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "insufficient_permissions"


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "Account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    error_code = "account_locked"

    def __init__(
        self, message: str = "Account is temporarily locked", *, remaining_ms: int = 0, **kwargs
    ) -> None:
        detail = kwargs.pop("detail", None) or {"remaining_ms": remaining_ms}
        super().__init__(message, detail=detail, **kwargs)
        self.remaining_ms = remaining_ms


class CsrfError(ForbiddenError):
    """Base for double-submit token failures."""


class CsrfMissingError(CsrfError):
    error_code = "csrf_missing"

    def __init__(self, message: str = "CSRF token missing", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CsrfMismatchError(CsrfError):
    error_code = "csrf_mismatch"

    def __init__(self, message: str = "CSRF token mismatch", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CsrfExpiredError(CsrfError):
    error_code = "csrf_expired"

    def __init__(self, message: str = "CSRF token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InsufficientPermissionsError(ForbiddenError):
    error_code = "insufficient_permissions"

    def __init__(self, message: str = "Insufficient permissions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_minutes: int = 0, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {"retry_after_minutes": retry_after_minutes}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_minutes = retry_after_minutes


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "internal_error"


class StoreUnavailableError(InternalError):
    """A durable-store call timed out or failed; callers must deny."""
    status_code = 503

    def __init__(self, message: str = "Credential store unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenMissingError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenBlacklistedError",
    "RefreshTokenInvalidError",
    "SessionExpiredError",
    "ForbiddenError",
    "AccountDisabledError",
    "AccountLockedError",
    "CsrfError",
    "CsrfMissingError",
    "CsrfMismatchError",
    "CsrfExpiredError",
    "InsufficientPermissionsError",
    "NotFoundError",
    "RateLimitedError",
    "InternalError",
    "StoreUnavailableError",
]
