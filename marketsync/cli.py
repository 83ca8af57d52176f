"""
MarketSync command line.

Usage:
    marketsync listings [--json]
    marketsync watch [--interval SECONDS]
    marketsync mint URI PRICE_ETHER
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence

from marketsync.chain import ContractGateway, LocalAccountWallet, RpcWalletProvider, WalletProvider
from marketsync.config import MarketSyncConfig, get_config
from marketsync.errors import CacheLoadFailed, MarketSyncError
from marketsync.models import MarketItem
from marketsync.monitoring import configure_logging
from marketsync.sync import SyncOrchestrator


def build_wallet(config: MarketSyncConfig) -> WalletProvider:
    """Sign locally when a private key is configured, otherwise use node accounts."""
    if config.wallet_private_key:
        return LocalAccountWallet(config.wallet_private_key)
    return RpcWalletProvider(config.get_rpc_endpoint())


def render_items(items: Sequence[MarketItem]) -> str:
    if not items:
        return "No listings."
    lines = []
    for item in items:
        if item.metadata is not None:
            title = item.metadata.name or "(untitled)"
        else:
            title = f"[metadata unavailable: {item.metadata_error}]"
        status = "listed" if item.is_listed else "unlisted"
        lines.append(f"#{item.token_id:<5} {item.price_display:>12} ETH  {status:<8} {title}")
    return "\n".join(lines)


def render_json(items: Sequence[MarketItem]) -> str:
    return json.dumps([item.model_dump() for item in items], indent=2)


async def run_listings(orchestrator: SyncOrchestrator, as_json: bool = False) -> int:
    try:
        items = await orchestrator.get_market_items()
    except CacheLoadFailed as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(render_json(items) if as_json else render_items(items))
    if orchestrator.last_skipped:
        print(f"({orchestrator.last_skipped} malformed listings skipped)", file=sys.stderr)
    return 0


async def run_watch(
    orchestrator: SyncOrchestrator,
    interval: float,
    max_cycles: int | None = None,
) -> int:
    """Reprint the marketplace whenever a load produces a new version."""
    printed_version: int | None = None
    cycles = 0

    await orchestrator.start()
    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        try:
            items = await orchestrator.get_market_items()
        except CacheLoadFailed as e:
            print(f"Error: {e} (retrying in {interval}s)", file=sys.stderr)
        else:
            version = orchestrator.peek().version
            if version != printed_version:
                printed_version = version
                print(render_items(items), flush=True)
                print("-" * 40, flush=True)
        orchestrator.cache.sweep()
        await asyncio.sleep(interval)
    return 0


async def run_mint(orchestrator: SyncOrchestrator, uri: str, price_ether: str) -> int:
    try:
        await orchestrator.gateway.connect()
        tx_hash = await orchestrator.create_listing(uri, price_ether)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except MarketSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(tx_hash)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marketsync",
        description="Read and watch an on-chain NFT marketplace",
    )
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint (overrides the configured network)")
    parser.add_argument("--contract", help="Marketplace contract address")
    parser.add_argument("--log-level", help="Log level (default from MARKETSYNC_LOG_LEVEL)")

    sub = parser.add_subparsers(dest="command", required=True)

    listings = sub.add_parser("listings", help="Print all listings once")
    listings.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    watch = sub.add_parser("watch", help="Keep printing listings as they change")
    watch.add_argument(
        "--interval", type=float, default=5.0, help="Seconds between reads (default: 5)"
    )

    mint = sub.add_parser("mint", help="Create a new listing")
    mint.add_argument("uri", help="Content URI of the metadata document")
    mint.add_argument("price", help="Price in ether, e.g. 0.5")

    return parser


async def _run(args: argparse.Namespace, config: MarketSyncConfig) -> int:
    # Reading never needs a wallet
    wallet = build_wallet(config) if args.command == "mint" else None
    gateway = ContractGateway(
        config,
        wallet=wallet,
        rpc_url=args.rpc_url,
        contract_address=args.contract,
    )
    orchestrator = SyncOrchestrator(gateway)
    try:
        if args.command == "listings":
            return await run_listings(orchestrator, as_json=args.json)
        if args.command == "watch":
            return await run_watch(orchestrator, args.interval)
        return await run_mint(orchestrator, args.uri, args.price)
    finally:
        await orchestrator.close()
        await gateway.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    configure_logging(level=args.log_level or config.log_level, json_output=config.log_json)

    try:
        return asyncio.run(_run(args, config))
    except MarketSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
