from __future__ import annotations

import threading
from typing import Callable, Generic, Hashable, Optional, TypeVar

from cachetools import TTLCache

from .config import DEFAULT_CACHE_TTL_SECONDS

V = TypeVar("V")

DEFAULT_CACHE_MAXSIZE = 1000


class LookupCache(Generic[V]):
    """Thread-safe TTL cache injected into the lookup collaborators."""

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        maxsize: int = DEFAULT_CACHE_MAXSIZE,
        timer: Optional[Callable[[], float]] = None,
    ):
        if timer is None:
            self._store: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        else:
            self._store = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            return self._store.get(key)

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._store[key] = value

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._store
