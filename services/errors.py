"""Exceptions raised by the auth and admission services.

Every exception carries the HTTP status and a stable error code the routers
use to build the `{"detail": ...}` envelope. Messages are safe to show to
clients: they never contain identifiers, hashes or driver errors.
"""

from typing import Optional


class ServiceError(Exception):
    """Base class for service layer exceptions mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidCredentials(ServiceError):
    """Identifier unknown or secret mismatch. Both look the same from outside."""

    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class SessionInvalid(ServiceError):
    """Refresh token unknown or expired."""

    status_code = 401
    error_code = "session_invalid"

    def __init__(self, message: str = "Invalid or expired refresh token") -> None:
        super().__init__(message)


class SessionNotFound(SessionInvalid):
    """No refresh token record matches the presented token."""


class SessionExpired(SessionInvalid):
    """The refresh token record exists but its expiry has passed."""


class AccessTokenInvalid(ServiceError):
    """Access token signature, issuer or expiry check failed."""

    status_code = 401
    error_code = "access_token_invalid"

    def __init__(self, message: str = "Could not validate credentials") -> None:
        super().__init__(message)


class RateLimitExceeded(ServiceError):
    """Admission was denied. Not security sensitive, so the wait is surfaced."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Rate limit exceeded. Try again in {retry_after_seconds} seconds."
        )
        self.retry_after_seconds = retry_after_seconds


class PersistenceUnavailable(ServiceError):
    """A persistence collaborator timed out or failed."""

    status_code = 503
    error_code = "persistence_unavailable"

    def __init__(self, message: str = "Service temporarily unavailable") -> None:
        super().__init__(message)


class SigningKeyUnavailable(ServiceError):
    """The signing key pair could not be read or parsed. Fatal at startup."""

    status_code = 500
    error_code = "signing_key_unavailable"


__all__ = [
    "ServiceError",
    "InvalidCredentials",
    "SessionInvalid",
    "SessionNotFound",
    "SessionExpired",
    "AccessTokenInvalid",
    "RateLimitExceeded",
    "PersistenceUnavailable",
    "SigningKeyUnavailable",
]
