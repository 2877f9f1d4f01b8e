from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so a routing layer can map it without inspecting messages:
    - validation_error (400)
    - invalid_credentials (401)
    - invalid_token (401)
    - conflict (409)
    - locked (423)
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
    """Malformed input the caller can correct (400)."""
    status_code = 400
    error_code = "validation_error"


class DuplicateError(ServiceError):
    """Registration conflicts with an existing username or email (409)."""
    status_code = 409
    error_code = "conflict"


class InvalidCredentialsError(ServiceError):
    """Unknown user or wrong password (401).

    The message never differs between the two cases; ``reason``, ``user_id``
    and ``locked_until`` (set when this failure triggered a lockout) are for
    audit and logging only.
    """

    status_code = 401
    error_code = "invalid_credentials"

    UNKNOWN_USER = "unknown_user"
    WRONG_PASSWORD = "wrong_password"

    def __init__(
        self,
        message: str = "Invalid username or password",
        *,
        reason: str = WRONG_PASSWORD,
        user_id: Optional[str] = None,
        locked_until: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.user_id = user_id
        self.locked_until = locked_until


class LockedError(ServiceError):
    """Account is temporarily locked after repeated failures (423)."""

    status_code = 423
    error_code = "locked"

    def __init__(
        self, message: str, *, user_id: str, locked_until: Optional[datetime]
    ) -> None:
        super().__init__(
            message,
            detail={"locked_until": locked_until.isoformat() if locked_until else None},
        )
        self.user_id = user_id
        self.locked_until = locked_until


class InvalidOrExpiredTokenError(ServiceError):
    """Refresh token is unknown, revoked, or expired (401)."""
    status_code = 401
    error_code = "invalid_refresh_token"


class InvalidTokenError(ServiceError):
    """Access token (or challenge handle) failed validation (401)."""
    status_code = 401
    error_code = "invalid_token"


class NoPendingChallengeError(ServiceError):
    """No unverified, unexpired 2FA challenge exists (400)."""
    status_code = 400
    error_code = "no_pending_challenge"


class InvalidCodeError(ServiceError):
    """2FA code does not match the pending challenge (400)."""
    status_code = 400
    error_code = "invalid_code"


class UserNotFoundError(ServiceError):
    """A referenced user vanished; integrity failure, not retryable (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateError",
    "InvalidCredentialsError",
    "LockedError",
    "InvalidOrExpiredTokenError",
    "InvalidTokenError",
    "NoPendingChallengeError",
    "InvalidCodeError",
    "UserNotFoundError",
]
