from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import Settings, get_settings, reset_settings_cache
from authkernel.logging import get_logger
from authkernel.service.auth import Authenticator
from authkernel.service.tokens import TokenCodec
from authkernel.storage.memory import MemoryRevocationCache, MemoryStore
from authkernel.storage.postgres import PostgresStore
from authkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide store, revocation cache, codec and Authenticator."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    self.settings.users_table,
                    timeout_seconds=self.settings.operation_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._init_revocation_cache()
        self.codec = TokenCodec.from_settings(self.settings)
        self.authenticator = Authenticator(self.store, self.cache, self.codec, self.settings)
        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__,
            revoke_on_refresh=self.settings.revoke_on_refresh,
            revoke_on_password_reset=self.settings.revoke_on_password_reset,
        )

    def _init_revocation_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.operation_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_memory_revocation:
            raise RuntimeError(
                "Redis is required for token revocation; start Redis or set "
                "ALLOW_MEMORY_REVOCATION=true for a single-process fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_not_used",
            message="Revocations are held in process memory and are lost on restart.",
        )
        return MemoryRevocationCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None

_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime

    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
