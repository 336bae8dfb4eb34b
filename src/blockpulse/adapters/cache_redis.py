from __future__ import annotations

import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..domain import codec
from ..domain.errors import CacheUnavailableError, MalformedDataError
from ..ports.cache import MISS, Cache

log = logging.getLogger(__name__)


class RedisCache(Cache):
    """
    Redis-backed cache (SETEX). Values are tagged JSON from `domain.codec`.
    Any Redis failure surfaces as CacheUnavailableError; undecodable payloads are
    dropped and reported as a miss.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "blockpulse:",
        timeout_s: float = 2.0,
        client: Optional[Any] = None,
    ) -> None:
        self.url = url
        self.prefix = prefix
        self.client = client if client is not None else redis.Redis.from_url(
            url,
            socket_timeout=timeout_s,
            socket_connect_timeout=timeout_s,
            decode_responses=True,
        )

    def _k(self, key: str) -> str:
        return self.prefix + key

    async def get(self, key: str) -> Any:
        try:
            payload = await self.client.get(self._k(key))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"redis get failed: {e}") from e
        if payload is None:
            return MISS
        try:
            return codec.loads(payload)
        except MalformedDataError as e:
            log.debug("dropping undecodable cache entry %s: %s", key, e)
            return MISS

    async def set(self, key: str, value: Any, ttl_s: float) -> None:
        ttl = int(ttl_s)
        if ttl <= 0:
            return
        try:
            await self.client.setex(self._k(key), ttl, codec.dumps(value))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"redis set failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._k(key))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"redis delete failed: {e}") from e

    async def aclose(self) -> None:
        await self.client.aclose()
