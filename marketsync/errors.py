"""
MarketSync Error Taxonomy

Gateway errors propagate to the caller because they need user action.
Reader and resolver errors are per-item and are absorbed into results.
CacheLoadFailed wraps failures that affect a whole batch.
"""


class MarketSyncError(Exception):
    """Base exception for the synchronization layer."""
    pass


# ==================== Gateway ====================


class GatewayError(MarketSyncError):
    """Base exception for wallet and contract handle errors."""
    pass


class WalletUnavailable(GatewayError):
    """Raised when no wallet provider is present in the environment."""
    pass


class UserRejected(GatewayError):
    """Raised when the user declines the account authorization request."""
    pass


class NotConnected(GatewayError):
    """Raised when a signer-bound handle is requested before connect()."""
    pass


class TransactionFailed(GatewayError):
    """Raised when a submitted transaction reverts or never gets a receipt."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


# ==================== Reader ====================


class ListingReadFailed(MarketSyncError):
    """Raised when the listing enumeration call itself fails."""
    pass


class MalformedListing(MarketSyncError):
    """Raised when a raw listing tuple does not match the expected shape."""

    def __init__(self, message: str, raw: object = None) -> None:
        super().__init__(message)
        self.raw = raw


# ==================== Metadata ====================


class MetadataError(MarketSyncError):
    """Base exception for per-item metadata failures."""

    def __init__(self, message: str, uri: str | None = None) -> None:
        super().__init__(message)
        self.uri = uri


class MetadataUnreachable(MetadataError):
    """Raised on network errors, timeouts or non-2xx gateway responses."""
    pass


class MetadataMalformed(MetadataError):
    """Raised when the metadata body is not a JSON object."""
    pass


# ==================== Cache ====================


class CacheLoadFailed(MarketSyncError):
    """Raised when a cache load fails for the whole batch."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key
