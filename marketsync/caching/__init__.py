"""
Query caching for the marketplace view.

Provides:
- QueryCache: single-flight, versioned, stale-while-revalidate entries
- InvalidationBus: chain-event driven invalidation signals
"""

from marketsync.caching.invalidation import (
    BusSubscription,
    InvalidationBus,
    InvalidationStats,
)
from marketsync.caching.query_cache import (
    CacheEntry,
    CacheObserver,
    CacheStats,
    CacheStatus,
    QueryCache,
)
from marketsync.caching.signals import InvalidationReason, InvalidationSignal

__all__ = [
    "BusSubscription",
    "CacheEntry",
    "CacheObserver",
    "CacheStats",
    "CacheStatus",
    "InvalidationBus",
    "InvalidationReason",
    "InvalidationSignal",
    "InvalidationStats",
    "QueryCache",
]
