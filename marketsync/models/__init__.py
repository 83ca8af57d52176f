"""Data models for marketplace listings and their metadata."""

from marketsync.models.listing import Listing, MarketItem, Metadata, RawListingTuple

__all__ = [
    "Listing",
    "Metadata",
    "MarketItem",
    "RawListingTuple",
]
