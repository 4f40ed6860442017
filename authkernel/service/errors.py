from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for Authenticator and Token Codec failures.

    Each subclass carries a stable ``error_code`` that the router maps to a
    fixed response message, and a ``retryable`` flag telling callers whether
    repeating the same action can succeed:
    - validation_error
    - invalid_credentials
    - token_invalid
    - token_expired
    - signing_unavailable (retryable)
    """

    error_code: str = "server_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request fields are missing or malformed."""
    error_code = "validation_error"


class InvalidCredentials(ServiceError):
    """Email/password pair did not match a registered user."""
    error_code = "invalid_credentials"


class TokenInvalid(ServiceError):
    """Token is malformed, carries a bad signature, or was revoked."""
    error_code = "token_invalid"


class TokenExpired(ServiceError):
    error_code = "token_expired"


class SigningUnavailable(ServiceError):
    """Signing key material could not be loaded."""
    error_code = "signing_unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "TokenInvalid",
    "TokenExpired",
    "SigningUnavailable",
]
