from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    Authentication failures are 401, authorization failures are 403, and the
    messages stay generic so callers cannot probe which accounts, clients or
    tokens exist.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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
    default_message = "invalid request"


class InvalidScopesError(ValidationError):
    """Requested scopes fall outside the service's catalogue."""
    error_code = "invalid_scopes"
    default_message = "invalid scopes for service"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "not authenticated"


class NoTokenError(AuthenticationError):
    error_code = "no_token"
    default_message = "authentication required"


class InvalidTokenError(AuthenticationError):
    """Malformed token, bad signature, wrong issuer/audience or unknown type."""
    error_code = "invalid_token"
    default_message = "invalid token"


class ExpiredTokenError(AuthenticationError):
    error_code = "token_expired"
    default_message = "token expired"


class RevokedTokenError(AuthenticationError):
    error_code = "token_revoked"
    default_message = "token has been revoked"


class AccountInvalidError(AuthenticationError):
    """The user behind a token no longer exists or is inactive."""
    error_code = "account_invalid"
    default_message = "account is not valid"


class AccountInactiveError(AuthenticationError):
    """Login against a deactivated account; the only credential failure with its own message."""
    error_code = "account_inactive"
    default_message = "Your account has been deactivated"


class ServiceInvalidError(AuthenticationError):
    """The service account behind a token no longer exists or is inactive."""
    error_code = "service_invalid"
    default_message = "service account is not valid"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"
    default_message = "invalid refresh token"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"
    default_message = "Invalid credentials"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class InsufficientPermissionError(ForbiddenError):
    error_code = "insufficient_permission"
    default_message = "insufficient permission"


class InsufficientScopeError(ForbiddenError):
    error_code = "insufficient_scope"
    default_message = "insufficient scope"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidScopesError",
    "AuthenticationError",
    "NoTokenError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "RevokedTokenError",
    "AccountInvalidError",
    "AccountInactiveError",
    "ServiceInvalidError",
    "InvalidRefreshTokenError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "InsufficientPermissionError",
    "InsufficientScopeError",
    "NotFoundError",
    "ConflictError",
]
