"""Typed failure taxonomy shared by every component.

Each error carries a machine-readable ``error_code``, the HTTP status the API
maps it to, whether a user-triggered retry makes sense, and a message that is
safe to show to the caller. Infrastructure faults always use a generic public
message; the detailed message stays in logs.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "CustodyError",
    "ValidationError",
    "Forbidden",
    "InvalidTransition",
    "NotFound",
    "Unauthenticated",
    "UploadRejected",
    "DeleteFailed",
    "RetrieveFailed",
    "IdentityLookupFailed",
    "StoreUnavailable",
]

_RETRY_MESSAGE = "Temporary storage or network problem, please try again"


class CustodyError(Exception):
    """Base class for classified failures."""

    error_code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def public_message(self) -> str:
        if self.retryable:
            return _RETRY_MESSAGE
        return self.message


class ValidationError(CustodyError):
    """Bad input shape. Fails fast, never retried."""

    error_code = "VALIDATION_FAILED"
    status_code = 422


class Forbidden(CustodyError):
    """Actor is not allowed to perform the operation."""

    error_code = "FORBIDDEN"
    status_code = 403


class InvalidTransition(CustodyError):
    """State-machine misuse (programming error or lost race)."""

    error_code = "INVALID_TRANSITION"
    status_code = 409


class NotFound(CustodyError):
    error_code = "NOT_FOUND"
    status_code = 404


class Unauthenticated(CustodyError):
    error_code = "UNAUTHENTICATED"
    status_code = 401


class UploadRejected(CustodyError):
    """Upload could not be pinned (credential, size or backend failure)."""

    error_code = "UPLOAD_REJECTED"
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 502,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code
        self.retryable = retryable


class DeleteFailed(CustodyError):
    """Transport or auth failure while removing a located entry."""

    error_code = "DELETE_FAILED"
    status_code = 502
    retryable = True


class IdentityLookupFailed(CustodyError):
    """Session or user lookup failed; previous identity is kept."""

    error_code = "IDENTITY_LOOKUP_FAILED"
    status_code = 503
    retryable = True


class RetrieveFailed(CustodyError):
    """Gateway fetch or decryption of stored content failed."""

    error_code = "RETRIEVE_FAILED"
    status_code = 502
    retryable = True


class StoreUnavailable(CustodyError):
    """A backing store could not be reached."""

    error_code = "STORE_UNAVAILABLE"
    status_code = 503
    retryable = True
