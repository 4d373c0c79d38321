from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from dunnoauth.logging import get_logger
from dunnoauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)


@contextmanager
def _backend_faults(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error("cache_operation_failed", operation=operation, error_type=type(exc).__name__)
        raise StoreUnavailable(f"cache {operation} failed") from exc


class RedisCache:
    """Thin Redis wrapper for revocation entries and rate-limit records.

    Every write carries an explicit TTL; nothing written here lives forever.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # throwaway event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl must be positive, got {ttl_seconds}")
        with _backend_faults("set"):
            await self.client.set(key, value, ex=int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with _backend_faults("get"):
            return await self.client.get(key)

    async def exists(self, key: str) -> bool:
        with _backend_faults("exists"):
            return bool(await self.client.exists(key))

    async def delete(self, key: str) -> bool:
        with _backend_faults("delete"):
            return bool(await self.client.delete(key))

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None when the key is absent."""
        with _backend_faults("ttl"):
            remaining = await self.client.ttl(key)
        if remaining is None or remaining < 0:
            return None
        return int(remaining)

    async def get_json(self, key: str) -> Optional[dict]:
        raw = await self.get(key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("cache_entry_corrupt", key_prefix=key.split(":", 1)[0])
            return None
        return data if isinstance(data, dict) else None

    async def set_json(self, key: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        await self.set_with_ttl(key, json.dumps(payload, separators=(",", ":")), ttl_seconds)

    async def close(self) -> None:
        await self.client.aclose()
