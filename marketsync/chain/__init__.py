"""
Marketplace Contract Access

Usage:
    from marketsync.chain import ContractGateway, MarketplaceReader

    async def example():
        gateway = ContractGateway()
        batch = await MarketplaceReader().fetch_listings(gateway.read_handle())

        # Writes need a wallet session
        await gateway.connect()
        await gateway.write_handle().mint("ipfs://<cid>", 10**18)
"""

from .abi import MARKETPLACE_ABI, event_signature, event_topic
from .gateway import ChainEvent, ContractGateway, ContractHandle
from .reader import ListingBatch, MarketplaceReader, decode_listing
from .units import format_ether, parse_ether
from .wallet import LocalAccountWallet, RpcWalletProvider, WalletProvider

__all__ = [
    "MARKETPLACE_ABI",
    "event_signature",
    "event_topic",
    "ChainEvent",
    "ContractGateway",
    "ContractHandle",
    "ListingBatch",
    "MarketplaceReader",
    "decode_listing",
    "format_ether",
    "parse_ether",
    "LocalAccountWallet",
    "RpcWalletProvider",
    "WalletProvider",
]
