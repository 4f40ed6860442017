from __future__ import annotations

import asyncio
import functools
import secrets
from typing import Any, Awaitable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authkernel.config import Settings
from authkernel.logging import get_logger, hash_email
from authkernel.service.errors import InvalidCredentials, TokenExpired, TokenInvalid, ValidationError
from authkernel.service.tokens import Claims, TokenCodec
from authkernel.storage.errors import StoreUnavailable, UserNotFound
from authkernel.storage.models import User

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> User: ...

    def create_user(self, email: str, credential: str) -> User: ...

    def set_user_password(self, email: str, credential: str) -> None: ...


class RevocationCache(Protocol):
    async def revoke_token(self, jti: str, ttl_seconds: int) -> bool: ...

    async def token_status(self, jti: str, subject: str) -> tuple[bool, int]: ...

    async def credential_version(self, subject: str) -> int: ...

    async def bump_credential_version(self, subject: str) -> int: ...


class Authenticator:
    """Login, logout, registration, refresh, verification and password reset.

    Holds no persistent state of its own: users live in the credential
    store, revocations and credential versions in the revocation cache.
    Every operation accepts ``timeout`` (seconds) bounding all of its store
    and cache calls; exceeding it raises the retryable ``StoreUnavailable``.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: RevocationCache,
        codec: TokenCodec,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Unknown emails are checked against this so both login failures cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    # deadlines

    def _deadline(self, timeout: Optional[float]) -> float:
        budget = self.settings.operation_timeout_seconds if timeout is None else timeout
        return asyncio.get_running_loop().time() + budget

    async def _bounded(
        self, deadline: float, awaitable: Awaitable[Any], *, op: str, shield: bool = False
    ) -> Any:
        """Await ``awaitable`` until ``deadline``.

        Shielded awaitables are writes: they keep running to completion when
        the caller times out or is cancelled, so no partial write is left.
        """
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.logger.warning("operation_deadline_exceeded", op=op, started=False)
            raise StoreUnavailable(f"{op} timed out", {"op": op})
        task = asyncio.ensure_future(awaitable)
        try:
            return await asyncio.wait_for(
                asyncio.shield(task) if shield else task, remaining
            )
        except asyncio.TimeoutError:
            if shield:
                task.add_done_callback(functools.partial(self._detached_write_done, op))
            self.logger.warning("operation_deadline_exceeded", op=op, started=True, write=shield)
            raise StoreUnavailable(f"{op} timed out", {"op": op}) from None
        except asyncio.CancelledError:
            if shield:
                task.add_done_callback(functools.partial(self._detached_write_done, op))
            raise

    def _detached_write_done(self, op: str, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.warning("detached_write_failed", op=op, error_type=type(exc).__name__)
        else:
            self.logger.info("detached_write_completed", op=op)

    async def _store_call(self, deadline: float, op: str, *args: Any, shield: bool = False) -> Any:
        fn = getattr(self.store, op)
        return await self._bounded(deadline, asyncio.to_thread(fn, *args), op=op, shield=shield)

    # passwords

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, credential: str, password: str) -> bool:
        """argon2 verification; the digest comparison is constant-time."""
        try:
            return self._pwd_hasher.verify(credential, password)
        except InvalidHash:
            self.logger.warning("password_credential_unreadable")
            return False
        except VerificationError:
            return False

    @staticmethod
    def _normalize_email(email: Optional[str]) -> str:
        return (email or "").strip().lower()

    # token state

    async def _verify_active(self, token: str, deadline: float) -> tuple[Claims, int]:
        """Verify signature and expiry, then consult the revocation cache.

        Revocation flag and credential version are read together so a
        concurrent logout or reset is seen either fully or not at all.
        """
        claims = self.codec.verify(token)
        revoked, version = await self._bounded(
            deadline, self.cache.token_status(claims.jti, claims.subject), op="token_status"
        )
        if revoked:
            raise TokenInvalid("token revoked")
        if self.settings.revoke_on_password_reset and claims.credential_version < version:
            raise TokenInvalid("token predates password reset")
        return claims, version

    # operations

    async def login(self, email: str, password: str, *, timeout: Optional[float] = None) -> str:
        deadline = self._deadline(timeout)
        email = self._normalize_email(email)
        if not email or not password:
            raise InvalidCredentials("invalid credentials")

        try:
            user = await self._store_call(deadline, "get_user_by_email", email)
            version = 0
            if self.settings.revoke_on_password_reset:
                # Version first, then the credential it guards: a reset racing
                # this login leaves the minted token behind the bumped version.
                version = await self._bounded(
                    deadline, self.cache.credential_version(user.id), op="credential_version"
                )
                user = await self._store_call(deadline, "get_user_by_email", email)
        except UserNotFound:
            await asyncio.to_thread(self._verify_hash, self._dummy_hash, password)
            self.logger.info("login_failed", reason="unknown_email", email_hash=hash_email(email))
            raise InvalidCredentials("invalid credentials") from None

        if not await asyncio.to_thread(self._verify_hash, user.password_credential, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentials("invalid credentials")

        token = self.codec.mint(user.id, credential_version=version)
        self.logger.info("login_succeeded", user_id=user.id)
        return token

    async def logout(self, token: str, *, timeout: Optional[float] = None) -> None:
        deadline = self._deadline(timeout)
        try:
            claims = self.codec.verify(token)
        except TokenExpired:
            self.logger.info("logout_expired_token")
            return
        # verify() passed, so the token is still inside its acceptance window
        created = await self._bounded(
            deadline,
            self.cache.revoke_token(claims.jti, self.codec.revocation_ttl(claims)),
            op="revoke_token",
            shield=True,
        )
        self.logger.info(
            "token_revoked",
            jti=claims.jti,
            user_id=claims.subject,
            already_revoked=not created,
        )

    async def register(
        self, email: str, password: str, *, timeout: Optional[float] = None
    ) -> User:
        deadline = self._deadline(timeout)
        email = self._normalize_email(email)
        if not email or not password:
            raise ValidationError("email and password are required")
        credential = await asyncio.to_thread(self._hash_password, password)
        # DuplicateEmail from the store's uniqueness constraint propagates as-is
        user = await self._store_call(deadline, "create_user", email, credential, shield=True)
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def refresh_token(self, token: str, *, timeout: Optional[float] = None) -> str:
        deadline = self._deadline(timeout)
        claims, version = await self._verify_active(token, deadline)
        new_token = self.codec.mint(
            claims.subject, credential_version=max(version, claims.credential_version)
        )
        if self.settings.revoke_on_refresh:
            created = await self._bounded(
                deadline,
                self.cache.revoke_token(claims.jti, self.codec.revocation_ttl(claims)),
                op="revoke_token",
                shield=True,
            )
            if not created:
                # Lost a race with another refresh or a logout of the same token
                self.logger.info("refresh_rejected_revoked", jti=claims.jti)
                raise TokenInvalid("token revoked")
        self.logger.info("token_refreshed", user_id=claims.subject, previous_jti=claims.jti)
        return new_token

    async def verify_token(self, token: str, *, timeout: Optional[float] = None) -> bool:
        """True iff the token is correctly signed, unexpired and not revoked."""
        deadline = self._deadline(timeout)
        try:
            await self._verify_active(token, deadline)
        except (TokenInvalid, TokenExpired):
            return False
        except StoreUnavailable as exc:
            # Fail closed: a token whose revocation state is unknown is not valid
            self.logger.warning("verify_token_cache_unavailable", error=exc.message)
            return False
        return True

    async def reset_password(
        self, email: str, new_password: str, *, timeout: Optional[float] = None
    ) -> None:
        deadline = self._deadline(timeout)
        email = self._normalize_email(email)
        if not email or not new_password:
            raise ValidationError("email and new password are required")
        user = await self._store_call(deadline, "get_user_by_email", email)
        credential = await asyncio.to_thread(self._hash_password, new_password)
        await self._store_call(deadline, "set_user_password", email, credential, shield=True)
        if self.settings.revoke_on_password_reset:
            version = await self._bounded(
                deadline,
                self.cache.bump_credential_version(user.id),
                op="bump_credential_version",
                shield=True,
            )
            self.logger.info("user_tokens_revoked", user_id=user.id, credential_version=version)
        self.logger.info("password_reset_completed", user_id=user.id)
