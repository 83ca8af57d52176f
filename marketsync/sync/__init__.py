"""Marketplace view assembly."""

from marketsync.sync.orchestrator import LISTINGS_KEY, SyncOrchestrator, merge_item

__all__ = [
    "LISTINGS_KEY",
    "SyncOrchestrator",
    "merge_item",
]
