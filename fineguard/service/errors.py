from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that the API layer puts in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - token_expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
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
    """Malformed input; the caller can correct it and retry (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Uniqueness violation on email, phone or license (409)."""
    status_code = 409
    error_code = "conflict"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


class AuthError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthError):
    """Wrong password or second-factor code.

    The message is deliberately identical for both factors and for unknown
    identifiers.
    """

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SecondFactorRequiredError(AuthError):
    """Password accepted but a second-factor code must accompany it (401)."""
    error_code = "mfa_required"

    def __init__(self, message: str = "second factor code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountInactiveError(AuthError):
    """Account deactivated by an administrator (403)."""
    status_code = 403
    error_code = "account_inactive"

    def __init__(self, message: str = "account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthError):
    """Too many failed attempts; carries the remaining lock duration (423).

    The message never varies with the attempt count.
    """

    status_code = 423
    error_code = "account_locked"

    def __init__(self, remaining_seconds: int) -> None:
        self.remaining_seconds = max(1, int(remaining_seconds))
        super().__init__(
            "account temporarily locked",
            detail={"retry_after_seconds": self.remaining_seconds},
        )


class TokenError(ServiceError):
    """Problem with a single-use reset or verification token (400)."""
    status_code = 400
    error_code = "token_invalid"


class TokenNotFoundError(TokenError):
    """No live token of the requested kind matches."""

    def __init__(self, message: str = "token not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(TokenError):
    """Token matched but its expiry has passed; the caller should ask to resend."""
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthError):
    """Session token malformed, forged, revoked or replayed; force a fresh login."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExpiredTokenError(AuthError):
    """Access or refresh token expired; for access tokens the caller may refresh."""
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(ServiceError):
    """Second-factor code rejected during enrollment confirmation (400)."""
    status_code = 400
    error_code = "invalid_code"

    def __init__(self, message: str = "invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "ForbiddenError",
    "AuthError",
    "InvalidCredentialsError",
    "SecondFactorRequiredError",
    "AccountInactiveError",
    "AccountLockedError",
    "TokenError",
    "TokenNotFoundError",
    "TokenExpiredError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "InvalidCodeError",
    "ServerError",
]
