"""TTL cache for read-mostly listings such as the member directory."""
from __future__ import annotations

import threading
from typing import Callable, Generic, Optional, TypeVar

from cachetools import TTLCache

from .config import get_settings

T = TypeVar("T")


class SimpleTTLCache(Generic[T]):
    def __init__(self, ttl: int, maxsize: int = 256) -> None:
        self._cache: TTLCache[str, T] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._cache[key] = value

    def get_or_set(self, key: str, factory: Callable[[], T]) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = factory()
        self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


directory_cache: SimpleTTLCache[list] = SimpleTTLCache(ttl=get_settings().directory_cache_ttl)
