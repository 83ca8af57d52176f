"""
Marketplace Reader

Calls the contract's listing enumeration and decodes the positional tuples
into Listing records. All knowledge of the tuple layout lives in
decode_listing().
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import structlog
from web3.exceptions import Web3Exception

from ..errors import ListingReadFailed, MalformedListing
from ..models import Listing, RawListingTuple
from .gateway import ContractHandle

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# (tokenId, creator, owner, uri, price, isListed, createdAt)
LISTING_FIELDS = ("token_id", "creator", "owner", "uri", "price_wei", "is_listed", "created_at")
LISTING_ARITY = len(LISTING_FIELDS)


def _require_int(name: str, value: Any, raw: Any) -> int:
    # bool is an int subclass but never a valid integer field here
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedListing(f"{name} must be an integer, got {type(value).__name__}", raw)
    return value


def _require_str(name: str, value: Any, raw: Any) -> str:
    if not isinstance(value, str):
        raise MalformedListing(f"{name} must be a string, got {type(value).__name__}", raw)
    return value


def decode_listing(raw: RawListingTuple) -> Listing:
    """
    Decode one raw contract tuple into a Listing.

    Raises:
        MalformedListing: If the arity, a field type or the price is invalid
    """
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
        raise MalformedListing(f"Expected a {LISTING_ARITY}-tuple, got {type(raw).__name__}", raw)
    if len(raw) != LISTING_ARITY:
        raise MalformedListing(f"Expected {LISTING_ARITY} fields, got {len(raw)}", raw)

    token_id, creator, owner, uri, price, is_listed, created_at = raw

    if not isinstance(is_listed, bool):
        raise MalformedListing(f"is_listed must be a bool, got {type(is_listed).__name__}", raw)

    price_wei = _require_int("price", price, raw)
    if price_wei < 0:
        raise MalformedListing(f"price must be non-negative, got {price_wei}", raw)

    return Listing(
        token_id=_require_int("token_id", token_id, raw),
        creator=_require_str("creator", creator, raw),
        owner=_require_str("owner", owner, raw),
        uri=_require_str("uri", uri, raw),
        price_wei=price_wei,
        is_listed=is_listed,
        created_at=_require_int("created_at", created_at, raw),
    )


@dataclass
class ListingBatch:
    """Decoded listings in contract order plus the count of skipped records."""

    listings: list[Listing] = field(default_factory=list)
    skipped: int = 0

    def __iter__(self) -> Iterator[Listing]:
        return iter(self.listings)

    def __len__(self) -> int:
        return len(self.listings)


class MarketplaceReader:
    """Stateless reader; the contract handle is passed to each call."""

    async def fetch_listings(self, handle: ContractHandle) -> ListingBatch:
        """
        Enumerate and decode all listings.

        Malformed tuples and repeated token ids are skipped and counted
        instead of failing the batch.

        Raises:
            ListingReadFailed: If the enumeration call itself fails
        """
        try:
            raw_listings = await handle.get_listings()
        except (Web3Exception, aiohttp.ClientError, OSError, TimeoutError, ValueError) as e:
            logger.warning("listing_read_failed", handle=repr(handle), error=str(e))
            raise ListingReadFailed(f"getListings() failed: {e}") from e

        batch = ListingBatch()
        seen: set[int] = set()
        for index, raw in enumerate(raw_listings):
            try:
                listing = decode_listing(raw)
            except MalformedListing as e:
                batch.skipped += 1
                logger.warning("listing_skipped", index=index, reason=str(e))
                continue

            if listing.token_id in seen:
                batch.skipped += 1
                logger.warning("listing_duplicate_skipped", index=index, token_id=listing.token_id)
                continue

            seen.add(listing.token_id)
            batch.listings.append(listing)

        logger.debug("listings_fetched", count=len(batch.listings), skipped=batch.skipped)
        return batch
