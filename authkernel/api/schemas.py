from __future__ import annotations

import unicodedata
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_LENGTH = 1024
MAX_TOKEN_LENGTH = 4096


class RequestAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    REGISTER = "register"
    REFRESH_TOKEN = "refresh_token"
    VERIFY_TOKEN = "verify_token"
    RESET_PASSWORD = "reset_password"

    @classmethod
    def from_str(cls, action: object) -> Optional["RequestAction"]:
        if not isinstance(action, str):
            return None
        try:
            return cls(action)
        except ValueError:
            return None


def _normalize_unicode(value: str) -> str:
    """Drop zero-width and bidi override characters, then apply NFKC."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


class _ActionRequest(BaseModel):
    # the envelope carries ``action`` and fields for other actions
    model_config = ConfigDict(extra="ignore")


class _EmailRequest(_ActionRequest):
    email: str = Field(default="", max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip()).lower()


class LoginRequest(_EmailRequest):
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)


class RegisterRequest(_EmailRequest):
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)


class ResetPasswordRequest(_EmailRequest):
    new_password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)


class TokenRequest(_ActionRequest):
    token: str = Field(default="", max_length=MAX_TOKEN_LENGTH)

    @field_validator("token")
    @classmethod
    def _strip_bearer(cls, value: str) -> str:
        value = value.strip()
        if value.lower().startswith("bearer "):
            return value.split(" ", 1)[1].strip()
        return value


class LogoutRequest(TokenRequest):
    pass


class RefreshTokenRequest(TokenRequest):
    pass


class VerifyTokenRequest(TokenRequest):
    pass


class AuthResponse(BaseModel):
    """Outbound envelope; ``token`` only on login and refresh success."""

    success: bool
    message: str
    token: Optional[str] = None

    def to_dict(self) -> dict:
        return self.model_dump(exclude_none=True)
