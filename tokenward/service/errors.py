from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """A failure the API layer renders as an error envelope.

    ``status_code`` and ``error_code`` are fixed per subclass; ``detail`` is
    passed through as the envelope's ``details`` object. A ``reason`` key in
    ``detail`` is the machine-readable cause recorded in login-attempt rows
    and log events.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def reason(self) -> Optional[str]:
        return self.detail.get("reason")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, reason={self.reason!r})"


# 400


class InvalidRequestError(ServiceError):
    """Blank or malformed input, rejected before any storage access."""


# 401


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class UserNotFoundError(AuthenticationError):
    """No account for the presented email."""


class InvalidTokenError(AuthenticationError):
    """Token expired, revoked, or failed signature verification."""


# 403


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Too many recent failed logins for this account."""


# 404 / 409


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class TokenNotFoundError(NotFoundError):
    pass


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


# 503


class StorageUnavailableError(ServiceError):
    """Ledger or cache I/O failed; the caller may retry."""

    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "InvalidRequestError",
    "AuthenticationError",
    "UserNotFoundError",
    "InvalidTokenError",
    "ForbiddenError",
    "AccountLockedError",
    "NotFoundError",
    "TokenNotFoundError",
    "ConflictError",
    "StorageUnavailableError",
]
