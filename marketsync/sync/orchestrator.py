"""
Sync Orchestrator
=================

Composes the gateway, reader, resolver, cache and invalidation bus into the
marketplace view.

On a cache miss or after an invalidation, the orchestrator reads the
listings from a freshly obtained read handle, resolves their metadata in
one bounded batch and merges both into MarketItems.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from marketsync.caching import (
    BusSubscription,
    CacheEntry,
    CacheObserver,
    InvalidationBus,
    InvalidationReason,
    QueryCache,
)
from marketsync.chain import ContractGateway, MarketplaceReader, format_ether, parse_ether
from marketsync.config import MarketSyncConfig
from marketsync.errors import CacheLoadFailed, ListingReadFailed, MetadataError
from marketsync.metadata import MetadataResolver
from marketsync.models import Listing, MarketItem, Metadata

logger = structlog.get_logger(__name__)

LISTINGS_KEY = "listings"


def merge_item(listing: Listing, metadata: Metadata | MetadataError) -> MarketItem:
    """Merge a listing with its resolved metadata or metadata error."""
    fields = listing.model_dump()
    price_display = format_ether(listing.price_wei)
    if isinstance(metadata, MetadataError):
        return MarketItem(
            **fields,
            price_display=price_display,
            metadata_error=f"{type(metadata).__name__}: {metadata}",
        )
    return MarketItem(**fields, price_display=price_display, metadata=metadata)


class SyncOrchestrator:
    """
    Entry point for consumers of the marketplace view.

    The gateway is always passed in explicitly. The other collaborators are
    created from the gateway's configuration unless injected. Only the
    components created here are closed by close().
    """

    def __init__(
        self,
        gateway: ContractGateway,
        *,
        cache: QueryCache | None = None,
        reader: MarketplaceReader | None = None,
        resolver: MetadataResolver | None = None,
        bus: InvalidationBus | None = None,
        config: MarketSyncConfig | None = None,
    ) -> None:
        self.config = config or gateway.config
        self.gateway = gateway
        self.cache = cache or QueryCache(self.config)
        self.reader = reader or MarketplaceReader()
        self._owns_resolver = resolver is None
        self.resolver = resolver or MetadataResolver(self.config)
        self.bus = bus or InvalidationBus(gateway, self.cache, self.config)

        self._subscription: BusSubscription | None = None
        self.last_skipped = 0
        self._logger = logger.bind(service="sync_orchestrator")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe the listings key to chain events and start the bus."""
        if self._subscription is None:
            self._subscription = self.bus.subscribe(LISTINGS_KEY)
        await self.bus.start()

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        await self.bus.stop()
        if self._owns_resolver:
            await self.resolver.close()

    async def __aenter__(self) -> SyncOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Reads
    # =========================================================================

    async def fetch_market_items(self) -> list[MarketItem]:
        """
        Load the full marketplace from the chain and metadata gateway.

        Metadata failures become per-item error markers.

        Raises:
            CacheLoadFailed: If the listing enumeration itself failed
        """
        handle = self.gateway.read_handle()
        try:
            batch = await self.reader.fetch_listings(handle)
        except ListingReadFailed as e:
            raise CacheLoadFailed(f"Could not read listings: {e}", key=LISTINGS_KEY) from e

        self.last_skipped = batch.skipped
        resolved = await self.resolver.resolve_batch([listing.uri for listing in batch])
        items = [merge_item(listing, metadata) for listing, metadata in zip(batch, resolved)]

        self._logger.info(
            "market_items_assembled",
            count=len(items),
            skipped=batch.skipped,
            metadata_errors=sum(1 for item in items if item.metadata_error is not None),
            generation=handle.generation,
        )
        return items

    async def get_market_items(self) -> list[MarketItem]:
        """Return the cached marketplace, fetching it when missing or stale."""
        items: list[MarketItem] = await self.cache.load(LISTINGS_KEY, self.fetch_market_items)
        return items

    def peek(self) -> CacheEntry[list[MarketItem]]:
        """Current cache state for the marketplace without triggering a fetch."""
        return self.cache.get(LISTINGS_KEY)

    def observe(self, listener: Callable[[CacheEntry[Any]], None]) -> CacheObserver:
        return self.cache.observe(LISTINGS_KEY, listener)

    async def refresh(self) -> list[MarketItem]:
        """Force a refetch while consumers keep seeing the previous items."""
        await self.bus.signal(LISTINGS_KEY, InvalidationReason.MANUAL)
        return await self.get_market_items()

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_listing(self, uri: str, price_ether: str) -> str:
        """
        Mint a new listing and mark the marketplace stale once it is mined.

        Args:
            uri: Content URI of the uploaded metadata document
            price_ether: Asking price as a decimal ether string, e.g. "0.5"

        Returns:
            The transaction hash

        Raises:
            ValueError: If the price is not a valid ether amount
            NotConnected: If no wallet session exists
            TransactionFailed: If the mint reverted or timed out
        """
        price_wei = parse_ether(price_ether)
        handle = self.gateway.write_handle()

        tx_hash = await handle.mint(uri, price_wei)
        await handle.wait_for_receipt(tx_hash, self.config.receipt_timeout_seconds)

        await self.bus.signal(LISTINGS_KEY, InvalidationReason.MANUAL, tx_hash=tx_hash)
        self._logger.info("listing_created", uri=uri, price_wei=price_wei, tx_hash=tx_hash)
        return tx_hash
