from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from dunnoauth.config import Settings, get_settings, reset_settings_cache
from dunnoauth.logging import get_logger
from dunnoauth.service.auth import AuthService, UserStore
from dunnoauth.service.passwords import PasswordVerifier
from dunnoauth.service.rate_limit import RateLimiter
from dunnoauth.service.revocation import RevocationStore
from dunnoauth.service.tokens import TokenService
from dunnoauth.service.two_factor import TwoFactorManager
from dunnoauth.storage.memory import MemoryCache, MemoryStore
from dunnoauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    Example: redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Owns the cache client, the user store and every auth component.

    Built once per process; tests rebuild it through ``reset_runtime_for_tests``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[UserStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = self._build_cache()

        self.passwords = PasswordVerifier(self.settings)
        self.revocations = RevocationStore(self.cache)
        self.tokens = TokenService(self.settings, self.revocations)
        self.rate_limiter = RateLimiter(self.settings, self.cache)
        self.two_factor = TwoFactorManager(self.store, self.passwords, self.settings)
        self.auth = AuthService(
            self.settings,
            self.store,
            self.passwords,
            self.tokens,
            self.rate_limiter,
            self.two_factor,
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _build_store(self) -> UserStore:
        if not self.settings.use_memory_store:
            raise RuntimeError(
                "no user store configured; pass one to Runtime(store=...) or set USE_MEMORY_STORE=true"
            )
        key_material = self.settings.mfa_encryption_key or self.settings.jwt_secret
        return MemoryStore(mfa_encryption_key=key_material)

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Optional[Exception] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc
        if not self.settings.test_mode and not self.settings.allow_cache_fallback_dev:
            logger.error(
                "runtime_cache_unavailable",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
            )
            raise RuntimeError(
                "Redis is required for token revocation and rate limiting; start Redis or "
                "set TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true for the in-memory fallback."
            ) from redis_error
        logger.warning(
            "runtime_cache_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="test" if self.settings.test_mode else "dev",
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment.

    Only allowed when TEST_MODE is set.
    """
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
