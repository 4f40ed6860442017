from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from authkernel.logging import get_logger, hash_email
from authkernel.storage.errors import DuplicateEmail, UserNotFound
from authkernel.storage.models import RevocationRecord, User


class MemoryStore:
    """In-process credential store used by tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def create_user(self, email: str, credential: str) -> User:
        with self._data_lock:
            # Check and insert under one lock so concurrent registrations serialize
            if email in self.users:
                raise DuplicateEmail("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, password_credential=credential)
            self.users[email] = user
            self.logger.debug("memory_user_created", user_id=user.id)
            return user

    def get_user_by_email(self, email: str) -> User:
        with self._data_lock:
            user = self.users.get(email)
            if user is None:
                raise UserNotFound("user not found", {"email_hash": hash_email(email)})
            return user

    def set_user_password(self, email: str, credential: str) -> None:
        with self._data_lock:
            user = self.users.get(email)
            if user is None:
                raise UserNotFound("user not found", {"email_hash": hash_email(email)})
            user.password_credential = credential
            user.updated_at = datetime.now(timezone.utc)


class MemoryRevocationCache:
    """Revocation records and credential versions held in process memory.

    Records expire with the token they revoke; expired entries are pruned
    on every write so the map stays bounded by the number of live tokens.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self.clock = clock or time.time
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        self._revoked: Dict[str, RevocationRecord] = {}
        self._versions: Dict[str, int] = {}

    def _prune(self, now: float) -> int:
        expired = [jti for jti, rec in self._revoked.items() if rec.expired(now)]
        for jti in expired:
            self._revoked.pop(jti, None)
        return len(expired)

    async def revoke_token(self, jti: str, ttl_seconds: int) -> bool:
        now = self.clock()
        with self._lock:
            self._prune(now)
            if jti in self._revoked:
                return False
            self._revoked[jti] = RevocationRecord(
                jti=jti, revoked_at=now, expires_at=now + max(1, int(ttl_seconds))
            )
            return True

    async def token_status(self, jti: str, subject: str) -> tuple[bool, int]:
        now = self.clock()
        with self._lock:
            record = self._revoked.get(jti)
            revoked = record is not None and not record.expired(now)
            return revoked, self._versions.get(subject, 0)

    async def credential_version(self, subject: str) -> int:
        with self._lock:
            return self._versions.get(subject, 0)

    async def bump_credential_version(self, subject: str) -> int:
        with self._lock:
            version = self._versions.get(subject, 0) + 1
            self._versions[subject] = version
            return version

    async def close(self) -> None:
        with self._lock:
            self._revoked.clear()
