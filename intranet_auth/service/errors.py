from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the API error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - invitation_expired (410)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    - service_unavailable (503)
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


class SessionExpiredError(AuthenticationError):
    """Session is unknown, timed out or no longer backed by a user (401)."""
    pass


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


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A backing store could not be reached (503)."""
    status_code = 503
    error_code = "service_unavailable"


class InvalidCredentials(AuthenticationError):
    """Wrong email, password or TOTP code.

    The message never says which check failed.
    """

    def __init__(self, *, detail: Optional[dict] = None) -> None:
        super().__init__("invalid email or password", detail=detail)


class RateLimited(RateLimitedError):
    """Too many failed logins for the client IP or the account."""

    def __init__(self) -> None:
        super().__init__("too many login attempts, try again later")


class PermissionDenied(ForbiddenError):
    def __init__(self, message: str = "access denied") -> None:
        super().__init__(message)


class InvitationError(ServiceError):
    """Base for invitation lookup/redemption failures."""


class InvitationNotFound(InvitationError):
    status_code = 404
    error_code = "not_found"

    def __init__(self) -> None:
        super().__init__("invitation not found")


class InvitationExpired(InvitationError):
    status_code = 410
    error_code = "invitation_expired"

    def __init__(self) -> None:
        super().__init__("this invitation has expired")


class InvitationAlreadyUsed(InvitationError):
    status_code = 409
    error_code = "conflict"

    def __init__(self) -> None:
        super().__init__("this invitation has already been used")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
    "InvalidCredentials",
    "RateLimited",
    "PermissionDenied",
    "InvitationError",
    "InvitationNotFound",
    "InvitationExpired",
    "InvitationAlreadyUsed",
]
