# blockpulse/ports/cache.py
from __future__ import annotations

from typing import Any, Protocol


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


class Cache(Protocol):
    """Disposable key/value store; never a source of truth."""

    async def get(self, key: str) -> Any:
        """Cached value, or MISS. Raises CacheUnavailableError when unreachable."""

    async def set(self, key: str, value: Any, ttl_s: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def aclose(self) -> None: ...
