"""In-memory TTL cache injected into each engine component.

Entries expire lazily on read; capacity is enforced on write by first
dropping expired entries and then the oldest remaining one.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Generic, TypeVar

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    key: str
    value: V
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    """Expose basic cache metrics for diagnostics."""

    label: str
    size: int
    max_entries: int
    hits: int
    misses: int
    ttl_seconds: int


class TTLCache(Generic[V]):
    """Fixed-capacity TTL cache with insertion-ordered eviction.

    Not thread-safe; the engine only touches it from the event loop.
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        max_entries: int = 100,
        *,
        label: str = "ttl_cache",
    ) -> None:
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.max_entries = max(1, int(max_entries))
        self.label = label
        self._store: dict[str, CacheEntry[V]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> V | None:
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expires_at <= time.monotonic():
            del self._store[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def set(self, key: str, value: V, *, ttl_seconds: int | None = None) -> CacheEntry[V]:
        ttl = max(1, int(ttl_seconds or self.ttl_seconds))
        entry = CacheEntry(key=key, value=value, expires_at=time.monotonic() + ttl)
        # Re-inserting moves the key to the newest position
        self._store.pop(key, None)
        self._store[key] = entry
        if len(self._store) > self.max_entries:
            self._evict()
        return entry

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._store.clear()
        else:
            self._store.pop(key, None)

    def describe(self) -> CacheStats:
        return CacheStats(
            label=self.label,
            size=len(self._store),
            max_entries=self.max_entries,
            hits=self._hits,
            misses=self._misses,
            ttl_seconds=self.ttl_seconds,
        )

    def _evict(self) -> None:
        now = time.monotonic()
        for key in [k for k, e in self._store.items() if e.expires_at <= now]:
            del self._store[key]
        while len(self._store) > self.max_entries:
            oldest = next(iter(self._store))
            del self._store[oldest]

    def __contains__(self, key: str) -> bool:
        entry = self._store.get(key)
        return entry is not None and entry.expires_at > time.monotonic()

    def __len__(self) -> int:
        return len(self._store)
