# skycal/utils/cache.py
"""
Per-(year, latitude, longitude) result cache with a time-to-live and a
retention ceiling.

Eviction policies
- "expire" (default): after a write that pushes the population over the
  ceiling, only entries whose TTL has elapsed are swept. Unexpired entries are
  never evicted, so the population can exceed the ceiling while many distinct
  keys are live.
- "lru": same sweep, then least-recently-used entries are dropped until the
  population is back at the ceiling.
"""
from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from skycal.utils.metrics import CACHE_ENTRIES, CACHE_LOOKUPS

CacheKey = Tuple[int, float, float]

EVICTION_POLICIES = ("expire", "lru")


def cache_key(year: int, lat: float, lon: float) -> CacheKey:
    # exact values, no rounding
    return int(year), float(lat), float(lon)


@dataclass(frozen=True)
class CacheEntry:
    events: List[Any]
    cached_at: float


class ResultCache:
    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 5,
        eviction: str = "expire",
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if eviction not in EVICTION_POLICIES:
            raise ValueError(f"eviction must be one of {EVICTION_POLICIES}")
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = int(max_entries)
        self.eviction = eviction
        self.clock = clock
        self.store: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self.lock = threading.Lock()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.cached_at >= self.ttl_seconds

    def get(self, year: int, lat: float, lon: float) -> Optional[List[Any]]:
        key = cache_key(year, lat, lon)
        with self.lock:
            entry = self.store.get(key)
            if entry is None:
                CACHE_LOOKUPS.labels(result="miss").inc()
                return None
            if self._expired(entry, self.clock()):
                del self.store[key]
                CACHE_ENTRIES.set(len(self.store))
                CACHE_LOOKUPS.labels(result="expired").inc()
                return None
            self.store.move_to_end(key)
            CACHE_LOOKUPS.labels(result="hit").inc()
            return list(entry.events)

    def put(self, year: int, lat: float, lon: float, events: List[Any]) -> None:
        key = cache_key(year, lat, lon)
        with self.lock:
            now = self.clock()
            self.store[key] = CacheEntry(events=list(events), cached_at=now)
            self.store.move_to_end(key)
            if len(self.store) > self.max_entries:
                self._sweep(now)
                if self.eviction == "lru":
                    while len(self.store) > self.max_entries:
                        self.store.popitem(last=False)
            CACHE_ENTRIES.set(len(self.store))

    def invalidate(self, year: int, lat: float, lon: float) -> bool:
        with self.lock:
            removed = self.store.pop(cache_key(year, lat, lon), None) is not None
            CACHE_ENTRIES.set(len(self.store))
            return removed

    def clear(self) -> None:
        with self.lock:
            self.store.clear()
            CACHE_ENTRIES.set(0)

    def _sweep(self, now: float) -> None:
        for k in [k for k, e in self.store.items() if self._expired(e, now)]:
            del self.store[k]

    def __len__(self) -> int:
        with self.lock:
            return len(self.store)

    def __contains__(self, key: CacheKey) -> bool:
        with self.lock:
            return key in self.store

    def stats(self) -> Dict[str, Any]:
        with self.lock:
            now = self.clock()
            return {
                "entries": len(self.store),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "eviction": self.eviction,
                "keys": [
                    {"year": k[0], "latitude": k[1], "longitude": k[2],
                     "age_seconds": round(now - e.cached_at, 3)}
                    for k, e in self.store.items()
                ],
            }
