"""Tests for the marketsync command line."""

import argparse
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from marketsync import cli
from marketsync.chain.wallet import LocalAccountWallet, RpcWalletProvider
from marketsync.config import MarketSyncConfig
from marketsync.errors import CacheLoadFailed, UserRejected, WalletUnavailable
from marketsync.models import MarketItem, Metadata

HARDHAT_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TX_HASH = "0x" + "ab" * 32


def make_item(token_id: int, price_display: str, metadata=None, error=None) -> MarketItem:
    return MarketItem(
        token_id=token_id,
        creator="0xa",
        owner="0xb",
        uri=f"cid://{token_id}",
        price_wei=0,
        is_listed=True,
        created_at=1700000000,
        price_display=price_display,
        metadata=metadata,
        metadata_error=error,
    )


@pytest.fixture
def items():
    return [
        make_item(1, "1.0", metadata=Metadata(name="Art1")),
        make_item(2, "0.5", error="MetadataUnreachable: timed out"),
    ]


@pytest.fixture
def mock_orchestrator(items):
    orchestrator = MagicMock()
    orchestrator.get_market_items = AsyncMock(return_value=items)
    orchestrator.last_skipped = 0
    orchestrator.start = AsyncMock()
    orchestrator.close = AsyncMock()
    orchestrator.create_listing = AsyncMock(return_value=TX_HASH)
    orchestrator.gateway.connect = AsyncMock()
    return orchestrator


# ==================== Rendering ====================


class TestRendering:
    """Tests for table and JSON output."""

    def test_table(self, items):
        output = cli.render_items(items)

        lines = output.splitlines()
        assert len(lines) == 2
        assert "#1" in lines[0] and "1.0 ETH" in lines[0] and "Art1" in lines[0]
        assert "0.5 ETH" in lines[1]
        assert "metadata unavailable: MetadataUnreachable: timed out" in lines[1]

    def test_empty(self):
        assert cli.render_items([]) == "No listings."

    def test_untitled(self):
        output = cli.render_items([make_item(3, "2.0", metadata=Metadata())])

        assert "(untitled)" in output

    def test_json(self, items):
        decoded = json.loads(cli.render_json(items))

        assert [entry["token_id"] for entry in decoded] == [1, 2]
        assert decoded[0]["metadata"]["name"] == "Art1"
        assert decoded[1]["metadata"] is None
        assert decoded[1]["metadata_error"] == "MetadataUnreachable: timed out"


# ==================== Parser ====================


class TestParser:
    """Tests for argument parsing."""

    def test_listings(self):
        args = cli.build_parser().parse_args(["listings", "--json"])

        assert args.command == "listings"
        assert args.json is True

    def test_watch_interval(self):
        args = cli.build_parser().parse_args(["--rpc-url", "http://node:8545", "watch", "--interval", "1.5"])

        assert args.command == "watch"
        assert args.interval == 1.5
        assert args.rpc_url == "http://node:8545"

    def test_mint(self):
        args = cli.build_parser().parse_args(["mint", "ipfs://Qm", "0.25"])

        assert (args.uri, args.price) == ("ipfs://Qm", "0.25")

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


# ==================== Commands ====================


class TestCommands:
    """Tests for the command coroutines."""

    async def test_listings(self, mock_orchestrator, capsys):
        assert await cli.run_listings(mock_orchestrator) == 0

        out = capsys.readouterr().out
        assert "Art1" in out

    async def test_listings_reports_skipped(self, mock_orchestrator, capsys):
        mock_orchestrator.last_skipped = 2

        await cli.run_listings(mock_orchestrator, as_json=True)

        captured = capsys.readouterr()
        assert json.loads(captured.out)[0]["token_id"] == 1
        assert "2 malformed listings skipped" in captured.err

    async def test_listings_failure(self, mock_orchestrator, capsys):
        mock_orchestrator.get_market_items.side_effect = CacheLoadFailed("node down")

        assert await cli.run_listings(mock_orchestrator) == 1
        assert "node down" in capsys.readouterr().err

    async def test_watch_prints_new_versions_only(self, mock_orchestrator, capsys):
        mock_orchestrator.peek.side_effect = [
            MagicMock(version=1),
            MagicMock(version=1),
            MagicMock(version=2),
        ]

        assert await cli.run_watch(mock_orchestrator, interval=0, max_cycles=3) == 0

        out = capsys.readouterr().out
        assert out.count("-" * 40) == 2
        mock_orchestrator.start.assert_awaited_once()
        assert mock_orchestrator.cache.sweep.call_count == 3

    async def test_watch_survives_load_failure(self, mock_orchestrator, items, capsys):
        mock_orchestrator.get_market_items.side_effect = [CacheLoadFailed("down"), items]
        mock_orchestrator.peek.return_value = MagicMock(version=1)

        await cli.run_watch(mock_orchestrator, interval=0, max_cycles=2)

        captured = capsys.readouterr()
        assert "retrying" in captured.err
        assert "Art1" in captured.out

    async def test_mint(self, mock_orchestrator, capsys):
        assert await cli.run_mint(mock_orchestrator, "ipfs://Qm", "0.25") == 0

        mock_orchestrator.gateway.connect.assert_awaited_once()
        mock_orchestrator.create_listing.assert_awaited_once_with("ipfs://Qm", "0.25")
        assert capsys.readouterr().out.strip() == TX_HASH

    async def test_mint_bad_price(self, mock_orchestrator):
        mock_orchestrator.create_listing.side_effect = ValueError("Invalid ether amount")

        assert await cli.run_mint(mock_orchestrator, "ipfs://Qm", "abc") == 2

    async def test_mint_rejected(self, mock_orchestrator, capsys):
        mock_orchestrator.gateway.connect.side_effect = UserRejected("declined")

        assert await cli.run_mint(mock_orchestrator, "ipfs://Qm", "1") == 1
        assert "declined" in capsys.readouterr().err


# ==================== Wiring ====================


class TestWiring:
    """Tests for wallet selection, _run and main."""

    def test_local_wallet_when_key_configured(self):
        config = MarketSyncConfig(_env_file=None, wallet_private_key=HARDHAT_KEY)

        assert isinstance(cli.build_wallet(config), LocalAccountWallet)

    def test_rpc_wallet_by_default(self, config):
        assert isinstance(cli.build_wallet(config), RpcWalletProvider)

    async def test_run_listings_is_anonymous(self, config, mock_orchestrator):
        args = argparse.Namespace(command="listings", json=False, rpc_url=None, contract=None)
        gateway = MagicMock()
        gateway.close = AsyncMock()

        with patch("marketsync.cli.ContractGateway", return_value=gateway) as gateway_cls, \
                patch("marketsync.cli.SyncOrchestrator", return_value=mock_orchestrator):
            assert await cli._run(args, config) == 0

        assert gateway_cls.call_args.kwargs["wallet"] is None
        mock_orchestrator.close.assert_awaited_once()
        gateway.close.assert_awaited_once()

    async def test_run_mint_uses_wallet(self, config, mock_orchestrator):
        args = argparse.Namespace(
            command="mint", uri="ipfs://Qm", price="1", rpc_url=None, contract=None
        )
        gateway = MagicMock()
        gateway.close = AsyncMock()

        with patch("marketsync.cli.ContractGateway", return_value=gateway) as gateway_cls, \
                patch("marketsync.cli.SyncOrchestrator", return_value=mock_orchestrator):
            assert await cli._run(args, config) == 0

        assert isinstance(gateway_cls.call_args.kwargs["wallet"], RpcWalletProvider)

    def test_main(self):
        with patch("marketsync.cli._run", new=AsyncMock(return_value=0)) as run, \
                patch("marketsync.cli.configure_logging") as configure_logging:
            assert cli.main(["--log-level", "DEBUG", "listings"]) == 0

        run.assert_awaited_once()
        assert configure_logging.call_args.kwargs["level"] == "DEBUG"

    def test_main_reports_errors(self, capsys):
        error = WalletUnavailable("Invalid wallet private key")
        with patch("marketsync.cli._run", new=AsyncMock(side_effect=error)), \
                patch("marketsync.cli.configure_logging"):
            assert cli.main(["mint", "ipfs://Qm", "1"]) == 1

        assert "Invalid wallet private key" in capsys.readouterr().err
