from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures surfaced by the credential store and revocation cache."""

    error_code: str = "store_error"
    retryable: bool = False

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    error_code = "conflict"


class DuplicateEmail(ConstraintViolation):
    """Another user already owns the email address."""

    error_code = "duplicate_email"


class UserNotFound(StorageError):
    error_code = "user_not_found"


class StoreUnavailable(StorageError):
    """The backing store could not be reached or did not answer in time."""

    error_code = "store_unavailable"
    retryable = True


__all__ = [
    "StorageError",
    "ConstraintViolation",
    "DuplicateEmail",
    "UserNotFound",
    "StoreUnavailable",
]
