"""Invalidation signal types shared by the cache and the invalidation bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class InvalidationReason(str, Enum):
    """Why a cache key was marked stale."""

    EVENT = "event"      # A matching on-chain event was observed
    MANUAL = "manual"    # Explicit request (refresh, mint, reconnect)
    TTL = "ttl"          # Entry outlived its freshness window


@dataclass(frozen=True)
class InvalidationSignal:
    """Tells the cache that one query key is stale."""

    key: str
    reason: InvalidationReason
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    tx_hash: str | None = None
