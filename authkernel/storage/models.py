from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    # argon2 encoded hash; never the plaintext password
    password_credential: str = field(repr=False)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class RevocationRecord:
    jti: str
    revoked_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at
