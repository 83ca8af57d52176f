"""
MarketSync - Marketplace Synchronization Layer

Reads an on-chain NFT marketplace, resolves the content-addressed metadata
of every listing and keeps a cached, event-invalidated view of the result.
"""

__version__ = "0.1.0"

from marketsync.config import MarketSyncConfig, configure, get_config
from marketsync.sync import SyncOrchestrator

__all__ = [
    "MarketSyncConfig",
    "SyncOrchestrator",
    "configure",
    "get_config",
    "__version__",
]
