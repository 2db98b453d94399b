from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class _CacheEntry(Generic[T]):
    value: T
    expires_at: float


class TTLCache(Generic[T]):
    """Small thread-safe in-memory TTL cache (process-local)."""

    def __init__(self, maxsize: int = 1000, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._maxsize = maxsize
        self._clock = clock
        self._lock = threading.Lock()
        self._store: Dict[str, _CacheEntry[T]] = {}

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._store.pop(key, None)
                return None
            return entry.value

    def set(self, key: str, value: T, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            if key not in self._store and len(self._store) >= self._maxsize:
                now = self._clock()
                for existing in list(self._store):
                    if self._store[existing].expires_at <= now:
                        self._store.pop(existing, None)
                if len(self._store) >= self._maxsize:
                    self._store.pop(next(iter(self._store)), None)
            self._store[key] = _CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)

    def pop(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._store if key.startswith(prefix)]
            for key in doomed:
                self._store.pop(key, None)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


__all__ = ["TTLCache"]
