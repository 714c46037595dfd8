import asyncio
import time
from typing import Any, Dict, Optional
from dataclasses import dataclass


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """In-memory TTL cache that remembers the last value after expiry.

    Expired entries are not returned by a normal ``get`` but stay available
    through ``get(key, allow_stale=True)`` until evicted by size, so callers
    can fall back to the last known value when a refresh fails.
    """

    def __init__(self, default_ttl: int = 60, max_size: int = 256):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._cache: Dict[str, CacheEntry] = {}
        self._access_order: list = []
        self._lock = asyncio.Lock()

    async def get(self, key: str, allow_stale: bool = False) -> Optional[Any]:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if not allow_stale and time.time() > entry.expires_at:
                return None

            # Update access order for LRU
            if key in self._access_order:
                self._access_order.remove(key)
            self._access_order.append(key)

            return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        async with self._lock:
            ttl = ttl if ttl is not None else self.default_ttl
            self._cache[key] = CacheEntry(value=value, expires_at=time.time() + ttl)

            if key in self._access_order:
                self._access_order.remove(key)
            self._access_order.append(key)

            while len(self._cache) > self.max_size:
                oldest_key = self._access_order.pop(0)
                self._cache.pop(oldest_key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()
            self._access_order.clear()

    def size(self) -> int:
        return len(self._cache)
