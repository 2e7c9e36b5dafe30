from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on without parsing messages:
    - validation_error (400)
    - unauthorized (401) and its credential/token refinements
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
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


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password, or deactivated account."""
    error_code = "invalid_credentials"


class TwoFactorRequiredError(AuthenticationError):
    """A second factor must be presented before tokens are issued."""
    error_code = "two_factor_required"


class TwoFactorInvalidCodeError(AuthenticationError):
    error_code = "two_factor_invalid_code"


class TokenExpiredError(AuthenticationError):
    """Access token or its session is past expiry."""
    error_code = "token_expired"


class TokenSignatureInvalidError(AuthenticationError):
    """Token is malformed, tampered with, or minted for another audience."""
    error_code = "token_invalid"


class SessionRevokedError(AuthenticationError):
    """The session behind a well-formed token no longer exists or was revoked."""
    error_code = "session_revoked"


class RefreshTokenInvalidError(AuthenticationError):
    error_code = "refresh_token_invalid"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotConfirmedError(ForbiddenError):
    """Credentials are valid but the email address was never confirmed."""
    error_code = "email_not_confirmed"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Too many failed attempts inside the lockout window (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TwoFactorRequiredError",
    "TwoFactorInvalidCodeError",
    "TokenExpiredError",
    "TokenSignatureInvalidError",
    "SessionRevokedError",
    "RefreshTokenInvalidError",
    "ForbiddenError",
    "EmailNotConfirmedError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
