from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, TypeVar

logger = logging.getLogger("community_memory")

T = TypeVar("T")

DEFAULT_MAX_SIZE = 1000


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    value: T
    timestamp: float


class BoundedCache(Generic[T]):
    """Size-bounded map with optional TTL reads.

    Eviction follows insertion/update order: ``put`` moves a key to the newest
    position, ``get`` never reorders. Entries are owned by the event loop thread,
    so a mutation never spans an ``await``.
    """

    def __init__(
        self,
        name: str,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.name = name
        self.max_size = int(max_size)
        self.ttl_seconds = float(ttl_seconds) if ttl_seconds else None
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def size(self) -> int:
        return len(self._entries)

    def _is_fresh(self, entry: CacheEntry[T], now: float) -> bool:
        if self.ttl_seconds is None:
            return True
        return (now - entry.timestamp) < self.ttl_seconds

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if not self._is_fresh(entry, self._clock()):
            self._entries.pop(key, None)
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def put(self, key: str, value: T) -> None:
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, timestamp=self._clock())
        if len(self._entries) > self.max_size:
            self.trim()

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def items(self) -> list[tuple[str, T]]:
        return [(key, entry.value) for key, entry in self._entries.items()]

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def trim(self) -> int:
        evicted = 0
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            evicted += 1
        if evicted:
            self.evictions += evicted
            logger.debug("Cache %s evicted %s oldest entries", self.name, evicted)
        return evicted

    def purge_expired(self) -> int:
        if self.ttl_seconds is None:
            return 0
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
        for key in stale:
            self._entries.pop(key, None)
        return len(stale)

    def stats(self) -> dict[str, object]:
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }
