"""
Query Cache Implementation
==========================

Keyed in-memory store of query results for the marketplace view.

- Single-flight: at most one fetch per key is in flight; concurrent
  callers attach to it and observe the same outcome.
- Stale-while-revalidate: invalidation marks an entry stale but keeps its
  data until a fresh fetch lands.
- Version check: each fetch captures the entry version when it starts. If
  an invalidation advanced the version before the fetch resolved, the
  result is discarded and a new fetch is issued.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog

from marketsync.caching.signals import InvalidationReason, InvalidationSignal
from marketsync.config import MarketSyncConfig, get_config
from marketsync.errors import CacheLoadFailed

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

Loader = Callable[[], Awaitable[Any]]


class CacheStatus(str, Enum):
    """Lifecycle status of a cache entry."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class CacheEntry(Generic[T]):
    """State of one cached query."""

    key: str
    data: T | None = None
    status: CacheStatus = CacheStatus.IDLE
    version: int = 0
    last_updated: datetime | None = None
    error: BaseException | None = None
    is_stale: bool = False
    stale_reason: InvalidationReason | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def age_seconds(self) -> float | None:
        """Seconds since the data was last updated, None if never loaded."""
        if self.last_updated is None:
            return None
        return (datetime.now(UTC) - self.last_updated).total_seconds()

    def snapshot(self) -> CacheEntry[T]:
        """Copy handed to readers so they never hold the live entry."""
        return replace(self, data=copy.copy(self.data))


@dataclass
class CacheStats:
    """Statistics for cache monitoring."""

    hits: int = 0
    misses: int = 0
    joins: int = 0
    fetches: int = 0
    stale_discards: int = 0
    invalidations: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class CacheObserver:
    """A read hook attached to one key. Call close() to detach."""

    def __init__(
        self,
        cache: QueryCache,
        key: str,
        listener: Callable[[CacheEntry[Any]], None],
    ) -> None:
        self.key = key
        self.listener = listener
        self._cache = cache
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._cache._detach(self)


class QueryCache:
    """
    Owner of all cache entries.

    Entries are mutated only through this class. get() returns a snapshot,
    so other components can read state but not change it.
    """

    def __init__(
        self,
        config: MarketSyncConfig | None = None,
        *,
        stale_after_seconds: int | None = None,
        gc_after_seconds: int | None = None,
        max_revalidations: int | None = None,
    ) -> None:
        self._config = config or get_config()
        self.stale_after_seconds = (
            self._config.stale_after_seconds if stale_after_seconds is None else stale_after_seconds
        )
        self.gc_after_seconds = (
            self._config.gc_after_seconds if gc_after_seconds is None else gc_after_seconds
        )
        self.max_revalidations = (
            self._config.max_revalidations if max_revalidations is None else max_revalidations
        )

        self._entries: dict[str, CacheEntry[Any]] = {}
        self._inflight: dict[str, asyncio.Task[Any]] = {}
        self._observers: dict[str, list[CacheObserver]] = defaultdict(list)
        self._stats = CacheStats()
        self._logger = logger.bind(service="query_cache")

    # =========================================================================
    # Reads
    # =========================================================================

    def _entry(self, key: str) -> CacheEntry[Any]:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
            self._logger.debug("cache_entry_created", key=key)
        return entry

    def get(self, key: str) -> CacheEntry[Any]:
        """Return the current state of ``key`` immediately."""
        return self._entry(key).snapshot()

    def keys(self) -> list[str]:
        return list(self._entries)

    def is_loading(self, key: str) -> bool:
        return key in self._inflight

    def stats(self) -> CacheStats:
        return self._stats

    # =========================================================================
    # Loading
    # =========================================================================

    async def load(self, key: str, loader: Loader) -> Any:
        """
        Return cached data for ``key``, fetching it with ``loader`` if needed.

        A fresh successful entry is returned without calling the loader. If a
        fetch for ``key`` is already in flight the caller attaches to it. Callers
        receive a shallow copy of the data, so mutating it leaves the entry intact.

        Raises:
            CacheLoadFailed: If the fetch failed; every attached caller
                receives the same exception
        """
        entry = self._entry(key)

        task = self._inflight.get(key)
        if task is not None:
            self._stats.joins += 1
            self._logger.debug("cache_load_joined", key=key)
            return copy.copy(await asyncio.shield(task))

        self._expire_if_old(entry)
        if entry.status == CacheStatus.SUCCESS and not entry.is_stale:
            self._stats.hits += 1
            return copy.copy(entry.data)

        self._stats.misses += 1
        task = asyncio.create_task(self._fetch(entry, loader), name=f"cache-load:{key}")
        self._inflight[key] = task
        task.add_done_callback(self._retrieve_exception)
        return copy.copy(await asyncio.shield(task))

    @staticmethod
    def _retrieve_exception(task: asyncio.Task[Any]) -> None:
        # Attached callers may all have gone away; mark the outcome as seen.
        if not task.cancelled():
            task.exception()

    async def _fetch(self, entry: CacheEntry[Any], loader: Loader) -> Any:
        key = entry.key
        entry.status = CacheStatus.LOADING
        self._notify(entry)
        revalidations = 0

        try:
            while True:
                token = entry.version
                self._stats.fetches += 1
                try:
                    result = await loader()
                except Exception as e:
                    if entry.version != token and revalidations < self.max_revalidations:
                        revalidations += 1
                        continue
                    self._fail(entry, e)
                    if isinstance(e, CacheLoadFailed):
                        raise
                    raise CacheLoadFailed(f"Loading {key!r} failed: {e}", key=key) from e

                if entry.version != token and revalidations < self.max_revalidations:
                    revalidations += 1
                    self._stats.stale_discards += 1
                    self._logger.info(
                        "cache_stale_result_discarded",
                        key=key,
                        fetched_version=token,
                        current_version=entry.version,
                    )
                    continue

                self._succeed(entry, result, superseded=entry.version != token)
                return result
        finally:
            self._inflight.pop(key, None)

    def _succeed(self, entry: CacheEntry[Any], result: Any, superseded: bool) -> None:
        entry.version += 1
        entry.data = result
        entry.status = CacheStatus.SUCCESS
        entry.error = None
        entry.last_updated = datetime.now(UTC)
        # Past the revalidation cap the newest result is kept but stays stale.
        entry.is_stale = superseded
        if not superseded:
            entry.stale_reason = None
        self._logger.debug("cache_load_succeeded", key=entry.key, version=entry.version)
        self._notify(entry)

    def _fail(self, entry: CacheEntry[Any], error: Exception) -> None:
        # Previous data is kept so consumers can still show it next to the error.
        entry.status = CacheStatus.ERROR
        entry.error = error
        self._stats.errors += 1
        self._logger.warning(
            "cache_load_failed",
            key=entry.key,
            error_type=type(error).__name__,
            error=str(error),
        )
        self._notify(entry)

    def _expire_if_old(self, entry: CacheEntry[Any]) -> None:
        if (
            self.stale_after_seconds > 0
            and entry.status == CacheStatus.SUCCESS
            and not entry.is_stale
            and entry.age_seconds is not None
            and entry.age_seconds > self.stale_after_seconds
        ):
            self.invalidate(entry.key, InvalidationReason.TTL)

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate(
        self,
        key: str,
        reason: InvalidationReason = InvalidationReason.MANUAL,
    ) -> bool:
        """
        Mark ``key`` stale and advance its version.

        The data stays in place until the next fetch resolves. Any fetch
        already in flight will have its result discarded.

        Returns:
            True if an entry existed for the key
        """
        entry = self._entries.get(key)
        if entry is None:
            return False

        entry.version += 1
        entry.is_stale = True
        entry.stale_reason = reason
        self._stats.invalidations += 1
        self._logger.debug(
            "cache_invalidated",
            key=key,
            reason=reason.value,
            version=entry.version,
            in_flight=key in self._inflight,
        )
        self._notify(entry)
        return True

    def apply(self, signal: InvalidationSignal) -> bool:
        """Consume an InvalidationSignal."""
        return self.invalidate(signal.key, signal.reason)

    def invalidate_all(self, reason: InvalidationReason = InvalidationReason.MANUAL) -> int:
        return sum(1 for key in list(self._entries) if self.invalidate(key, reason))

    # =========================================================================
    # Observers
    # =========================================================================

    def observe(
        self,
        key: str,
        listener: Callable[[CacheEntry[Any]], None],
    ) -> CacheObserver:
        """
        Attach a read hook to ``key``.

        The listener receives a snapshot each time the entry changes. An
        observed entry is never swept.
        """
        self._entry(key)
        observer = CacheObserver(self, key, listener)
        self._observers[key].append(observer)
        return observer

    def observer_count(self, key: str) -> int:
        return len(self._observers.get(key, []))

    def _detach(self, observer: CacheObserver) -> None:
        observers = self._observers.get(observer.key)
        if observers and observer in observers:
            observers.remove(observer)
            if not observers:
                del self._observers[observer.key]

    def _notify(self, entry: CacheEntry[Any]) -> None:
        observers = self._observers.get(entry.key)
        if not observers:
            return
        snapshot = entry.snapshot()
        for observer in list(observers):
            try:
                observer.listener(snapshot)
            except Exception as e:
                self._logger.warning("cache_observer_error", key=entry.key, error=str(e))

    # =========================================================================
    # Maintenance
    # =========================================================================

    def sweep(self) -> int:
        """
        Remove entries nobody observes, that are not loading, and that have
        been idle longer than the garbage-collection window.

        Returns:
            Number of removed entries
        """
        now = datetime.now(UTC)
        removed = []
        for key, entry in list(self._entries.items()):
            if key in self._inflight or self._observers.get(key):
                continue
            touched = entry.last_updated or entry.created_at
            if (now - touched).total_seconds() >= self.gc_after_seconds:
                del self._entries[key]
                removed.append(key)

        if removed:
            self._logger.debug("cache_swept", count=len(removed))
        return len(removed)

    def clear(self) -> int:
        """Drop every entry that is not currently loading."""
        keys = [key for key in self._entries if key not in self._inflight]
        for key in keys:
            del self._entries[key]
        return len(keys)
