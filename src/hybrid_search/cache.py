"""
Bounded LRU + TTL caching.

``LRUCache`` is the in-process cache every component uses. ``TieredCache``
puts an optional remote key/value store (get/put with TTL) in front of it;
store failures are logged and fall through to the in-process tier.
"""

from __future__ import annotations

import asyncio
import threading
import time
import weakref
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Protocol, TypeVar

import structlog

from .stats import HitCounter


logger = structlog.get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_DEFAULT_MAX_SIZE = 1000
_DEFAULT_TTL_SECONDS = 300.0
_DEFAULT_STORE_TIMEOUT_SECONDS = 1.0
_DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0


@dataclass
class CacheEntry(Generic[V]):
    """A cached value with its insertion time and last access tick."""

    value: V
    timestamp: float
    access_counter: int


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time snapshot of cache counters."""

    hits: int
    misses: int
    hit_rate: float
    size: int
    max_size: int
    evictions: int
    expirations: int


def _sweep_loop(
    cache_ref: "weakref.ReferenceType[LRUCache]",
    stop: threading.Event,
    interval: float,
) -> None:
    while not stop.wait(interval):
        cache = cache_ref()
        if cache is None:
            return
        cache.sweep()
        del cache


class LRUCache(Generic[K, V]):
    """Thread-safe bounded cache with LRU eviction and TTL expiry.

    Recency is tracked with a monotonically increasing access counter rather
    than wall-clock time. Entries older than ``ttl_seconds`` are treated as
    absent on read and removed by a periodic background sweep, so memory
    stays bounded even for keys that are never read again.
    """

    def __init__(
        self,
        *,
        max_size: int = _DEFAULT_MAX_SIZE,
        ttl_seconds: float = _DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float | None = _DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.name = name
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._lock = threading.RLock()
        self._access_counter = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        if sweep_interval_seconds is not None and sweep_interval_seconds > 0:
            self._sweeper = threading.Thread(
                target=_sweep_loop,
                args=(weakref.ref(self), self._stop, sweep_interval_seconds),
                name=f"{name}-sweeper",
                daemon=True,
            )
            self._sweeper.start()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.has(key)  # type: ignore[arg-type]

    def get(self, key: K) -> V | None:
        """Return the cached value, or ``None`` on a miss or expired entry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._is_expired(entry):
                self._remove(key)
                self._expirations += 1
                self._misses += 1
                return None
            self._touch(key, entry)
            self._hits += 1
            return entry.value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            if key in self._entries:
                self._remove(key)
            if len(self._entries) >= self.max_size:
                self._evict_least_recently_used()
            self._access_counter += 1
            self._entries[key] = CacheEntry(
                value=value,
                timestamp=self._clock(),
                access_counter=self._access_counter,
            )

    def delete(self, key: K) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def has(self, key: K) -> bool:
        """Return True if *key* is present and not expired (no stats, no recency update)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._is_expired(entry):
                self._remove(key)
                self._expirations += 1
                return False
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._expirations = 0

    def sweep(self) -> int:
        """Remove every expired entry. Return how many were removed."""
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry)]
            for key in expired:
                self._remove(key)
            self._expirations += len(expired)
        if expired:
            logger.debug("cache sweep", cache=self.name, removed=len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / total if total else 0.0,
                size=len(self._entries),
                max_size=self.max_size,
                evictions=self._evictions,
                expirations=self._expirations,
            )

    def close(self) -> None:
        """Stop the background sweeper and drop all entries."""
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=1.0)
        self.clear()

    def _is_expired(self, entry: CacheEntry[V]) -> bool:
        return self._clock() - entry.timestamp > self.ttl_seconds

    def _touch(self, key: K, entry: CacheEntry[V]) -> None:
        self._access_counter += 1
        entry.access_counter = self._access_counter
        # The OrderedDict mirrors access_counter order, so the head is always
        # the least recently used key.
        self._entries.move_to_end(key)

    def _remove(self, key: K) -> None:
        del self._entries[key]

    def _evict_least_recently_used(self) -> None:
        if not self._entries:
            return
        oldest_key, _ = self._entries.popitem(last=False)
        self._evictions += 1
        logger.debug("cache eviction", cache=self.name, key=str(oldest_key)[:16])


class CacheStore(Protocol):
    """Remote key/value store contract (e.g. a distributed KV namespace)."""

    def get(self, key: str) -> str | None:
        """Return the stored string or None."""

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store *value* under *key* for *ttl_seconds*."""


class TieredCache:
    """Best-effort remote store backed by an in-process ``LRUCache``.

    Values are strings (serialized by the caller) so both tiers hold the
    exact same bytes. The store cannot enumerate or drop keys, so ``clear``
    moves to a fresh key generation and ``delete`` writes an empty tombstone.
    """

    def __init__(
        self,
        local: LRUCache[str, str],
        *,
        store: CacheStore | None = None,
        namespace: str = "cache",
        store_timeout_seconds: float | None = _DEFAULT_STORE_TIMEOUT_SECONDS,
    ) -> None:
        self.local = local
        self.store = store
        self.namespace = namespace
        self.store_timeout_seconds = store_timeout_seconds
        self.counter = HitCounter()
        self.generation = 0

    def _store_key(self, key: str) -> str:
        return f"{self.namespace}:{self.generation}:{key}"

    async def _store_call(self, func: Callable[..., Any], *args: Any) -> Any:
        # A stalled store counts as a failed lookup or write.
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args),
            timeout=self.store_timeout_seconds,
        )

    async def get(self, key: str) -> str | None:
        value: str | None = None
        if self.store is not None:
            try:
                value = await self._store_call(self.store.get, self._store_key(key))
            except Exception as exc:
                logger.warning(
                    "cache store lookup failed",
                    namespace=self.namespace,
                    error=str(exc) or type(exc).__name__,
                )
                value = None
        if not value:
            value = self.local.get(key)
        self.counter.record(value is not None)
        return value

    async def set(self, key: str, value: str) -> None:
        if self.store is not None:
            await self._put(key, value)
        self.local.set(key, value)

    async def delete(self, key: str) -> bool:
        if self.store is not None:
            await self._put(key, "")
        return self.local.delete(key)

    async def _put(self, key: str, value: str) -> None:
        try:
            await self._store_call(
                self.store.put,
                self._store_key(key),
                value,
                int(self.local.ttl_seconds),
            )
        except Exception as exc:
            logger.warning(
                "cache store write failed",
                namespace=self.namespace,
                error=str(exc) or type(exc).__name__,
            )

    def clear(self) -> None:
        # Entries under earlier generations become unreachable and age out
        # of the store by TTL.
        self.generation += 1
        self.local.clear()
        self.counter.reset()

    def __len__(self) -> int:
        return len(self.local)

    def close(self) -> None:
        self.local.close()
