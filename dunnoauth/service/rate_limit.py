from __future__ import annotations

import hashlib
import json
import time
from typing import Callable, Optional

from dunnoauth.config import Settings
from dunnoauth.logging import get_logger
from dunnoauth.service.revocation import TTLCache
from dunnoauth.storage.models import RateLimitInfo

logger = get_logger(__name__)

RATE_LIMIT_PREFIX = "ratelimit:"
DEFAULT_ACTION = "login"


def rate_limit_key(action: str, origin: str, identity: str) -> str:
    """Cache key for one (action, origin, identity) attempt record.

    The pair is JSON encoded before hashing so that no choice of origin and
    identity can collide with another pair.
    """
    digest = hashlib.sha256(
        json.dumps([origin or "", identity or ""]).encode("utf-8")
    ).hexdigest()
    return f"{RATE_LIMIT_PREFIX}{action}:{digest}"


class RateLimiter:
    """Counts failed attempts per (origin, identity) and blocks past a threshold.

    Records live in the shared cache with a sliding TTL equal to the window,
    so an idle record heals itself. Reads and writes are not atomic; under
    concurrent requests the count may come out low.
    """

    def __init__(
        self,
        settings: Settings,
        cache: TTLCache,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.settings.rate_limit_enabled

    @property
    def max_attempts(self) -> int:
        return self.settings.rate_limit_max_attempts

    @property
    def window_seconds(self) -> int:
        return self.settings.rate_limit_window_seconds

    async def _load(self, key: str) -> Optional[RateLimitInfo]:
        data = await self.cache.get_json(key)
        if not data:
            return None
        return RateLimitInfo.from_dict(data)

    async def is_rate_limited(
        self, origin: str, identity: str, *, action: str = DEFAULT_ACTION
    ) -> bool:
        if not self.enabled:
            return False
        key = rate_limit_key(action, origin, identity)
        info = await self._load(key)
        if info is None:
            return False
        if info.blocked:
            return True
        within_window = self._clock() - info.first_attempt <= self.window_seconds
        if info.attempts >= self.max_attempts and within_window:
            info.blocked = True
            ttl = await self.cache.ttl(key) or self.window_seconds
            await self.cache.set_json(key, info.to_dict(), ttl)
            logger.warning("rate_limit_blocked", action=action, attempts=info.attempts)
            return True
        return False

    async def track_attempt(
        self, origin: str, identity: str, *, action: str = DEFAULT_ACTION
    ) -> Optional[RateLimitInfo]:
        """Record one failed attempt; returns the updated record.

        Returns None when rate limiting is disabled.
        """
        if not self.enabled:
            return None
        key = rate_limit_key(action, origin, identity)
        now = self._clock()
        info = await self._load(key) or RateLimitInfo(
            attempts=0, first_attempt=now, last_attempt=now
        )
        info.attempts += 1
        info.last_attempt = now
        if info.attempts >= self.max_attempts and not info.blocked:
            info.blocked = True
            logger.warning("rate_limit_blocked", action=action, attempts=info.attempts)
        await self.cache.set_json(key, info.to_dict(), self.window_seconds)
        return info

    async def reset_attempts(
        self, origin: str, identity: str, *, action: str = DEFAULT_ACTION
    ) -> None:
        if not self.enabled:
            return
        await self.cache.delete(rate_limit_key(action, origin, identity))

    async def remaining_block_seconds(
        self, origin: str, identity: str, *, action: str = DEFAULT_ACTION
    ) -> int:
        """Seconds until a blocked record lapses; 0 when not blocked.

        Internal only: callers must not pass this to the client.
        """
        if not self.enabled:
            return 0
        key = rate_limit_key(action, origin, identity)
        info = await self._load(key)
        if info is None or not info.blocked:
            return 0
        return await self.cache.ttl(key) or 0
