from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients switch on. Messages are written for humans and
    never carry store or connection details.
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


class InvalidCredentialError(AuthenticationError):
    error_code = "invalid_credential"


class InvalidTokenError(AuthenticationError):
    """Refresh token unknown to the session registry."""
    error_code = "invalid_token"


class MalformedTokenError(AuthenticationError):
    error_code = "malformed"


class BadSignatureError(AuthenticationError):
    error_code = "bad_signature"


class ExpiredError(AuthenticationError):
    error_code = "expired"


class RevokedError(AuthenticationError):
    error_code = "revoked"


class ReuseDetectedError(AuthenticationError):
    """A rotated refresh token was presented again; the lineage is gone."""
    error_code = "reuse_detected"


class StalePermissionsError(AuthenticationError):
    """Token's capability snapshot predates a permission or status change."""
    error_code = "stale_permissions"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class LockedError(ForbiddenError):
    error_code = "locked"


class TenantMismatchError(ForbiddenError):
    error_code = "tenant_mismatch"


class TenantSuspendedError(ForbiddenError):
    error_code = "tenant_suspended"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class OperationTimeoutError(ServiceError):
    """An I/O-bound step did not complete within its timeout (503)."""
    status_code = 503
    error_code = "timeout"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialError",
    "InvalidTokenError",
    "MalformedTokenError",
    "BadSignatureError",
    "ExpiredError",
    "RevokedError",
    "ReuseDetectedError",
    "StalePermissionsError",
    "ForbiddenError",
    "LockedError",
    "TenantMismatchError",
    "TenantSuspendedError",
    "NotFoundError",
    "ConflictError",
    "OperationTimeoutError",
    "ServerError",
]
