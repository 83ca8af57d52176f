"""
MarketSync Configuration

This module defines the settings for the marketplace synchronization layer:
which network and contract to read, which content gateway resolves metadata,
and how the cache and invalidation bus behave.

Configuration is loaded from environment variables prefixed with
MARKETSYNC_ (or a .env file) with defaults suited to a local development node.
"""

import logging
import os
import warnings
from enum import Enum

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class SecurityWarning(UserWarning):
    """Warning for insecure configurations."""

    pass


class ChainNetwork(str, Enum):
    """Networks the marketplace contract can be read from."""

    LOCALHOST = "localhost"
    BASE = "base"
    BASE_SEPOLIA = "base_sepolia"  # Testnet
    ETHEREUM = "ethereum"
    ETHEREUM_SEPOLIA = "ethereum_sepolia"  # Testnet


# Public JSON-RPC endpoints for each network
RPC_ENDPOINTS = {
    ChainNetwork.LOCALHOST: "http://127.0.0.1:8545",
    ChainNetwork.BASE: "https://mainnet.base.org",
    ChainNetwork.BASE_SEPOLIA: "https://sepolia.base.org",
    ChainNetwork.ETHEREUM: "https://eth.llamarpc.com",
    ChainNetwork.ETHEREUM_SEPOLIA: "https://rpc.sepolia.org",
}


class MarketSyncConfig(BaseSettings):
    """
    Main configuration class for the synchronization layer.

    All settings can be overridden via environment variables prefixed with
    MARKETSYNC_. For example, MARKETSYNC_GATEWAY_HOST sets gateway_host.
    """

    # Chain Configuration
    network: ChainNetwork = Field(
        default=ChainNetwork.LOCALHOST, description="Network hosting the marketplace contract"
    )
    rpc_url: str | None = Field(
        default=None, description="JSON-RPC endpoint override (defaults to the network's)"
    )
    contract_address: str = Field(
        default="0x5FbDB2315678afecb367f032d93F642f64180aa3",
        description="Marketplace contract address (first Hardhat deployment by default)",
    )
    wallet_private_key: str | None = Field(
        default=None,
        description="Private key for a locally signing wallet (EVM hex format)",
    )
    receipt_timeout_seconds: int = Field(
        default=120, description="Maximum time to wait for a mint transaction receipt"
    )

    # Metadata Configuration
    gateway_host: str = Field(
        default="ipfs.io", description="HTTP gateway host for content-addressed URIs"
    )
    metadata_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single metadata fetch"
    )
    metadata_concurrency: int = Field(
        default=8, ge=1, description="Fixed worker count for metadata fan-out"
    )

    # Cache Configuration
    stale_after_seconds: int = Field(
        default=300, ge=0, description="Age after which a cached result is refetched (0 disables)"
    )
    gc_after_seconds: int = Field(
        default=300, ge=0, description="Idle time before an unobserved entry is swept"
    )
    max_revalidations: int = Field(
        default=3, ge=0, description="Discarded stale results tolerated per load"
    )

    # Invalidation Configuration
    invalidation_events: list[str] = Field(
        default=["ListingChanged"], description="Contract events that mark listings stale"
    )
    event_poll_interval_seconds: float = Field(
        default=2.0, gt=0, description="Interval between event log polls"
    )
    coalesce_window: int = Field(
        default=1024, ge=1, description="Number of recent transaction hashes kept for de-duplication"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON logs instead of console output")

    @field_validator("wallet_private_key")
    @classmethod
    def validate_private_key_security(cls, v: str | None, info: ValidationInfo) -> str | None:
        """Warn when a private key is loaded from the environment outside development."""
        if v is not None:
            environment = os.environ.get(
                "MARKETSYNC_ENVIRONMENT", os.environ.get("ENVIRONMENT", "development")
            )
            if environment == "production":
                logger.critical(
                    f"{info.field_name} loaded from environment variable in production"
                )
                warnings.warn(
                    f"Private key '{info.field_name}' loaded from environment variable "
                    "in production. Use a secrets manager.",
                    SecurityWarning,
                    stacklevel=2,
                )
            elif environment != "development":
                logger.warning(
                    f"Private key '{info.field_name}' loaded from environment variable."
                )
        return v

    @field_validator("gateway_host")
    @classmethod
    def strip_gateway_host(cls, v: str) -> str:
        """Accept hosts written with a scheme or trailing slash."""
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix):]
        return v.strip("/")

    def get_rpc_endpoint(self) -> str:
        """Get the JSON-RPC endpoint for the configured network."""
        if self.rpc_url:
            return self.rpc_url
        return RPC_ENDPOINTS.get(self.network, RPC_ENDPOINTS[ChainNetwork.LOCALHOST])

    model_config = {
        "env_prefix": "MARKETSYNC_",
        "env_file": ".env",
        "extra": "ignore",
    }


# Singleton instance for global access
_config: MarketSyncConfig | None = None


def get_config() -> MarketSyncConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = MarketSyncConfig()
    return _config


def configure(config: MarketSyncConfig | None) -> None:
    """
    Set a custom configuration instance.

    Passing None resets to environment-derived settings on next access.
    """
    global _config
    _config = config
