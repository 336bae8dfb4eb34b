from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable

from ..ports.cache import MISS, Cache


class MemoryCache(Cache):
    """
    In-process TTL cache. Entries expire by TTL only; when full, the least
    recently written entry is evicted. `clock` is injectable for tests.
    """

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_entries = max_entries
        self.clock = clock
        self._data: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    async def get(self, key: str) -> Any:
        hit = self._data.get(key)
        if hit is None:
            return MISS
        expires_at, value = hit
        if self.clock() >= expires_at:
            del self._data[key]
            return MISS
        return value

    async def set(self, key: str, value: Any, ttl_s: float) -> None:
        if ttl_s <= 0:
            return
        self._data.pop(key, None)
        self._data[key] = (self.clock() + ttl_s, value)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)

    async def aclose(self) -> None:
        self._data.clear()
