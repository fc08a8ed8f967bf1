"""Bounded in-memory TTL cache with per-entry expiry timers.

Every entry gets its own scheduled removal when it is stored.  A manual
:meth:`BoundedTTLCache.cleanup` sweep removes anything the timers have not
caught yet; both paths go through the same idempotent delete, so whichever
fires first wins.  When the cache is full the earliest-inserted entry is
evicted (FIFO, reads never reorder).
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, TypeVar


V = TypeVar("V")

_LOGGER = logging.getLogger("renewed.cache")
# Distinguishes a miss from a stored ``None``
_MISSING = object()


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Runs ``callback`` once after ``delay`` seconds unless cancelled."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class ThreadingScheduler:
    """Scheduler backed by daemon :class:`threading.Timer` objects."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.start()
        return timer


@dataclass(slots=True)
class _CacheEntry(Generic[V]):
    value: V
    expires_at: float


@dataclass(slots=True)
class _PendingExpiry:
    token: object
    handle: TimerHandle


@dataclass(frozen=True, slots=True)
class CacheStats:
    hits: int
    misses: int
    sets: int
    evictions: int
    hit_rate: str
    size: int

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BoundedTTLCache(Generic[V]):
    """Size-bounded cache where each entry expires ``ttl`` seconds after ``set``.

    All public methods take a single re-entrant lock guarding the entries,
    the pending expirations and the counters, so the cache can be shared
    between request threads and timer threads.
    """

    def __init__(
        self,
        max_size: int = 50,
        default_ttl: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Scheduler | None = None,
    ) -> None:
        if int(max_size) < 1:
            raise ValueError("max_size must be a positive integer")
        if float(default_ttl) < 0:
            raise ValueError("default_ttl must not be negative")
        self._max_size = int(max_size)
        self._default_ttl = float(default_ttl)
        self._clock = clock
        self._scheduler: Scheduler = scheduler or ThreadingScheduler()
        self._lock = threading.RLock()
        # dict keeps insertion order; the first key is the eviction candidate
        self._entries: Dict[str, _CacheEntry[V]] = {}
        self._timers: Dict[str, _PendingExpiry] = {}
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def get(self, key: str) -> Optional[V]:
        value = self._lookup(key)
        return None if value is _MISSING else value

    def _lookup(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return _MISSING
            if self._clock() >= entry.expires_at:
                self._remove(key)
                self._misses += 1
                return _MISSING
            self._hits += 1
            return entry.value

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        ttl_sec = self._default_ttl if ttl is None else float(ttl)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_size:
                oldest = next(iter(self._entries))
                self._remove(oldest)
                self._evictions += 1
                _LOGGER.debug("Evicted cache entry %s", oldest)

            self._cancel_timer(key)
            # Re-inserting moves an existing key to the back of the eviction queue
            self._entries.pop(key, None)
            self._entries[key] = _CacheEntry(value=value, expires_at=self._clock() + ttl_sec)

            token = object()
            handle = self._scheduler.call_later(ttl_sec, lambda: self._expire(key, token))
            self._timers[key] = _PendingExpiry(token=token, handle=handle)
            self._sets += 1

    def get_or_set(self, key: str, factory: Callable[[], V], ttl: float | None = None) -> V:
        """Return the cached value for ``key`` or store and return ``factory()``.

        ``factory`` runs outside the lock; concurrent callers may both compute
        the value and the last writer wins.
        """

        cached = self._lookup(key)
        if cached is not _MISSING:
            return cached
        value = factory()
        self.set(key, value, ttl)
        return value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._remove(key)

    def clear(self) -> None:
        with self._lock:
            for pending in self._timers.values():
                pending.handle.cancel()
            self._timers.clear()
            self._entries.clear()

    def cleanup(self) -> int:
        """Remove every expired entry now and return how many were dropped."""

        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                self._remove(key)
            return len(expired)

    def has(self, key: str) -> bool:
        """Expiry-aware membership test; does not touch hit/miss counters."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._clock() >= entry.expires_at:
                self._remove(key)
                return False
            return True

    def keys(self) -> List[str]:
        with self._lock:
            now = self._clock()
            return [key for key, entry in self._entries.items() if now < entry.expires_at]

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def usage_percentage(self) -> int:
        with self._lock:
            return round(len(self._entries) / self._max_size * 100)

    def get_stats(self) -> CacheStats:
        with self._lock:
            reads = self._hits + self._misses
            hit_rate = f"{self._hits / reads * 100:.2f}%" if reads else "0%"
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                evictions=self._evictions,
                hit_rate=hit_rate,
                size=len(self._entries),
            )

    def _remove(self, key: str) -> bool:
        self._cancel_timer(key)
        return self._entries.pop(key, None) is not None

    def _cancel_timer(self, key: str) -> None:
        pending = self._timers.pop(key, None)
        if pending is not None:
            pending.handle.cancel()

    def _expire(self, key: str, token: object) -> None:
        with self._lock:
            pending = self._timers.get(key)
            # A timer that started firing after a re-set must not drop the newer value
            if pending is None or pending.token is not token:
                return
            self._remove(key)


class CacheSweeper:
    """Periodically runs :meth:`BoundedTTLCache.cleanup` on the event loop."""

    def __init__(self, cache: BoundedTTLCache[Any], interval_sec: float) -> None:
        self._cache = cache
        self._interval = float(interval_sec)

    def sweep(self) -> int:
        cleaned = self._cache.cleanup()
        if cleaned > 0:
            _LOGGER.info("Cache sweep removed %s expired entries", cleaned)
        return cleaned

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.sweep()


__all__ = [
    "BoundedTTLCache",
    "CacheStats",
    "CacheSweeper",
    "Scheduler",
    "ThreadingScheduler",
]
