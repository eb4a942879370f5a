from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

from catalog.config import get_settings, reset_settings_cache
from catalog.logging import get_logger, mask_url_password
from catalog.service.auth import AuthService
from catalog.service.blacklist import BlacklistManager
from catalog.service.gatekeeper import AuthGatekeeper
from catalog.service.products import ProductService
from catalog.service.sessions import SessionManager
from catalog.service.tokens import TokenService
from catalog.storage.memory import MemoryStore
from catalog.storage.memory_cache import MemoryCache
from catalog.storage.postgres import PostgresStore
from catalog.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class Runtime:
    """Owns the store, the cache handle and the services built on them."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    statement_timeout_ms=self.settings.db_statement_timeout_ms,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        # Tests always run against the in-memory cache
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    connect_timeout=self.settings.redis_connect_timeout,
                    socket_timeout=self.settings.redis_socket_timeout,
                    operation_timeout=self.settings.cache_operation_timeout,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, blacklists and the product cache; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            if redis_error is not None or not self.settings.test_mode:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    message=(
                        f"Running without Redis under {fallback_mode}; sessions and "
                        "blacklists are process-local."
                    ),
                    mode=fallback_mode,
                )
            self.cache = MemoryCache()

        session_duration = timedelta(minutes=self.settings.session_ttl_minutes)
        self.tokens = TokenService(
            self.settings.jwt_secret,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.sessions = SessionManager(self.cache, default_duration=session_duration)
        self.blacklist = BlacklistManager(
            self.cache,
            self.sessions,
            ttl=timedelta(minutes=self.settings.blacklist_ttl_minutes),
        )
        self.gatekeeper = AuthGatekeeper(self.tokens, self.sessions, self.blacklist)
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.tokens,
            self.blacklist,
            session_duration=session_duration,
        )
        self.products = ProductService(self.store, self.cache)
        logger.info("runtime_init_complete", cache_type=type(self.cache).__name__)

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads building separate runtimes.
    """
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
        if runtime is not None:
            asyncio.run(runtime.close())
        runtime = Runtime()
        return runtime
