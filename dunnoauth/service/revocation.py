from __future__ import annotations

from typing import Optional, Protocol

from dunnoauth.logging import get_logger

logger = get_logger(__name__)

BLACKLIST_PREFIX = "blacklist:"
_SENTINEL = "true"


class TTLCache(Protocol):
    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def get_json(self, key: str) -> Optional[dict]: ...

    async def set_json(self, key: str, payload: dict, ttl_seconds: int) -> None: ...


class RevocationStore:
    """Blacklist of raw token strings, each kept only as long as the token lives.

    Writes are idempotent; a repeated revoke simply overwrites the entry.
    """

    def __init__(self, cache: TTLCache) -> None:
        self.cache = cache

    @staticmethod
    def key_for(token: str) -> str:
        return f"{BLACKLIST_PREFIX}{token}"

    async def add(self, token: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            return False
        await self.cache.set_with_ttl(self.key_for(token), _SENTINEL, int(ttl_seconds))
        return True

    async def contains(self, token: str) -> bool:
        return await self.cache.exists(self.key_for(token))

    async def remove(self, token: str) -> bool:
        return await self.cache.delete(self.key_for(token))
