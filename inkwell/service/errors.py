from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code`` so
    callers branch on the kind of failure rather than on message text. The
    message itself is kept verbatim for the presentation boundary:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - dependency_error (503)
    - timeout (504)
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
    """Malformed or policy-violating input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials or an invalid, expired, or unrecognized token (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated, but the role does not permit the action (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Referenced entity is absent (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate username or email (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DependencyError(ServiceError):
    """A store, hasher, or email dependency failed (503).

    Retryable at the caller's discretion; never retried internally.
    """
    status_code = 503
    error_code = "dependency_error"


class DependencyTimeoutError(DependencyError):
    """A dependency did not answer before its deadline (504)."""
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "DependencyError",
    "DependencyTimeoutError",
]
