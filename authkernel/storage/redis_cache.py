from __future__ import annotations

from typing import Any, Awaitable

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authkernel.logging import get_logger
from authkernel.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper holding token revocations and credential versions."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    REVOKED_PREFIX = "auth:token:revoked:"
    VERSION_PREFIX = "auth:credver:"

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("redis_unavailable", op=op, error=str(exc))
            raise StoreUnavailable("revocation cache unavailable", {"op": op}) from exc

    async def revoke_token(self, jti: str, ttl_seconds: int) -> bool:
        """Record a revocation; True only for the call that created the record.

        SET NX makes concurrent logout/refresh of one token race-free.
        """
        created = await self._call(
            "revoke_token",
            self.client.set(
                f"{self.REVOKED_PREFIX}{jti}", "1", ex=max(1, int(ttl_seconds)), nx=True
            ),
        )
        return bool(created)

    async def token_status(self, jti: str, subject: str) -> tuple[bool, int]:
        """Read revocation flag and credential version in a single round trip."""
        revoked, version = await self._call(
            "token_status",
            self.client.mget(
                [f"{self.REVOKED_PREFIX}{jti}", f"{self.VERSION_PREFIX}{subject}"]
            ),
        )
        return revoked is not None, int(version or 0)

    async def credential_version(self, subject: str) -> int:
        value = await self._call(
            "credential_version", self.client.get(f"{self.VERSION_PREFIX}{subject}")
        )
        return int(value or 0)

    async def bump_credential_version(self, subject: str) -> int:
        value = await self._call(
            "bump_credential_version",
            self.client.incr(f"{self.VERSION_PREFIX}{subject}"),
        )
        return int(value)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
