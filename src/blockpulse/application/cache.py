from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..domain.errors import CacheUnavailableError
from ..ports.cache import MISS, Cache

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TTLPolicy:
    """Deeply confirmed data is unlikely to change, so it lives longer."""
    deep_threshold: int = 12
    long_ttl_s: float = 3_600
    short_ttl_s: float = 60

    def ttl_for(self, confirmations: Optional[int]) -> float:
        if confirmations is not None and confirmations > self.deep_threshold:
            return self.long_ttl_s
        return self.short_ttl_s


def cache_key(entity: str, network: str, ident: Any) -> str:
    return f"{entity}:{network}:{str(ident).lower()}"


class ReadThroughCache:
    """
    Wraps a Cache so that an unavailable backend behaves like a miss on read and
    a no-op on write. `backend=None` disables caching entirely.
    """

    def __init__(self, backend: Optional[Cache]) -> None:
        self.backend = backend

    async def get(self, key: str) -> Any:
        if self.backend is None:
            return MISS
        try:
            return await self.backend.get(key)
        except CacheUnavailableError as e:
            log.debug("cache get %s degraded to miss: %s", key, e)
            return MISS

    async def set(self, key: str, value: Any, ttl_s: float) -> None:
        if self.backend is None:
            return
        try:
            await self.backend.set(key, value, ttl_s)
        except CacheUnavailableError as e:
            log.debug("cache set %s skipped: %s", key, e)

    async def aclose(self) -> None:
        if self.backend is not None:
            await self.backend.aclose()
