"""
MarketSync - Test Fixtures

Shared pytest fixtures for all test modules.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from marketsync.config import MarketSyncConfig, configure

CREATOR = "0x" + "a" * 40
OWNER = "0x" + "b" * 40
ACCOUNT = "0x" + "c" * 40
TX_HASH = "0x" + "ab" * 32

# Well-known Hardhat development key (account #0). TEST ONLY.
HARDHAT_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
HARDHAT_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def config():
    """Configuration with fast timings, independent of the environment."""
    return MarketSyncConfig(
        _env_file=None,
        rpc_url="http://127.0.0.1:8545",
        gateway_host="gateway.test",
        metadata_timeout_seconds=1.0,
        metadata_concurrency=4,
        stale_after_seconds=300,
        gc_after_seconds=300,
        max_revalidations=3,
        event_poll_interval_seconds=0.01,
        coalesce_window=16,
    )


@pytest.fixture(autouse=True)
def global_config(config):
    """Install the test configuration as the global one."""
    configure(config)
    yield config
    configure(None)


# =============================================================================
# Listings
# =============================================================================


@pytest.fixture
def raw_listing():
    """Factory for positional getListings() tuples."""

    def _make(
        token_id: int,
        uri: str = "ipfs://QmTest",
        price_wei: int = 10**18,
        *,
        creator: str = CREATOR,
        owner: str = OWNER,
        is_listed: bool = True,
        created_at: int = 1700000000,
    ) -> tuple:
        return (token_id, creator, owner, uri, price_wei, is_listed, created_at)

    return _make


# =============================================================================
# Chain Mocks
# =============================================================================


@pytest.fixture
def mock_handle():
    """A read handle whose contract calls are AsyncMocks."""
    handle = MagicMock()
    handle.generation = 1
    handle.get_listings = AsyncMock(return_value=[])
    handle.current_block = AsyncMock(return_value=100)
    handle.poll_events = AsyncMock(return_value=([], 101))
    handle.mint = AsyncMock(return_value=TX_HASH)
    handle.wait_for_receipt = AsyncMock(return_value={"status": 1})
    handle.close = AsyncMock()
    return handle


@pytest.fixture
def mock_gateway(config, mock_handle):
    """A ContractGateway stand-in that hands out mock_handle."""
    gateway = MagicMock()
    gateway.config = config
    gateway.read_handle = MagicMock(return_value=mock_handle)
    gateway.write_handle = MagicMock(return_value=mock_handle)
    gateway.on_handle_changed = MagicMock(return_value=MagicMock())
    gateway.connect = AsyncMock(return_value=ACCOUNT)
    gateway.close = AsyncMock()
    return gateway
