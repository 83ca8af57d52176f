"""
Contract Gateway

This module owns the connection to the marketplace contract. It hands out
two kinds of ContractHandle:

- read handles, bound to a plain JSON-RPC endpoint, usable without a wallet
  so listings can be browsed anonymously
- write handles, bound to the connected wallet account, for minting

Handles are immutable snapshots. Switching networks replaces the read handle
wholesale with a new generation; dependents must re-read read_handle()
instead of holding on to an old one.
"""

import inspect
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from eth_account.signers.local import LocalAccount  # type: ignore[import-not-found]
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted

from ..config import MarketSyncConfig, get_config
from ..errors import NotConnected, TransactionFailed, UserRejected, WalletUnavailable
from ..models import RawListingTuple
from .abi import MARKETPLACE_ABI, event_topic
from .wallet import WalletProvider

logger: logging.Logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


@dataclass(frozen=True)
class ChainEvent:
    """A contract log matched by event name. The payload is left opaque."""

    name: str
    tx_hash: str
    block_number: int
    log_index: int


class ContractHandle:
    """
    Handle to the marketplace contract on one endpoint.

    A handle without an account is read-only; mint() requires an account.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        address: str,
        *,
        generation: int,
        rpc_url: str,
        abi: list[dict[str, Any]] | None = None,
        account: str | None = None,
        signer: LocalAccount | None = None,
    ) -> None:
        self._w3 = w3
        self._abi = abi or MARKETPLACE_ABI
        self.address = w3.to_checksum_address(address)
        self.generation = generation
        self.rpc_url = rpc_url
        self.account = account
        self._signer = signer
        self._contract: Any = w3.eth.contract(  # type: ignore[attr-defined]
            address=self.address, abi=self._abi
        )

    @property
    def is_writable(self) -> bool:
        return self.account is not None

    def __repr__(self) -> str:
        mode = "write" if self.is_writable else "read"
        return f"<ContractHandle {mode} gen={self.generation} {self.rpc_url}>"

    # ==================== Reads ====================

    async def get_listings(self) -> list[RawListingTuple]:
        """Call getListings() and return the raw positional tuples."""
        result: Any = await self._contract.functions.getListings().call()
        return list(result)

    async def current_block(self) -> int:
        result: int = await self._w3.eth.block_number  # type: ignore[misc]
        return result

    async def poll_events(
        self,
        event_names: list[str],
        from_block: int,
    ) -> tuple[list[ChainEvent], int]:
        """
        Fetch logs for the named events from ``from_block`` to the chain head.

        Logs are matched on topic0 only, so payload layout does not matter.

        Returns:
            Tuple of (events in chain order, next block to poll from)
        """
        topics = {event_topic(self._abi, name): name for name in event_names}
        latest: int = await self._w3.eth.block_number  # type: ignore[misc]
        if from_block > latest:
            return [], from_block

        logs: Any = await self._w3.eth.get_logs({
            "address": self.address,
            "fromBlock": from_block,
            "toBlock": latest,
            "topics": [list(topics)],
        })

        events: list[ChainEvent] = []
        for log in logs:
            log_topics = log.get("topics") or []
            if not log_topics:
                continue
            name = topics.get(Web3.to_hex(log_topics[0]))
            if name is None:
                continue
            events.append(ChainEvent(
                name=name,
                tx_hash=Web3.to_hex(log["transactionHash"]),
                block_number=int(log["blockNumber"]),
                log_index=int(log.get("logIndex", 0)),
            ))
        return events, latest + 1

    # ==================== Writes ====================

    async def mint(self, uri: str, price_wei: int, value_wei: int = 0) -> str:
        """
        Call mint(uri, priceWei) from the connected account.

        Returns:
            The transaction hash as a 0x-prefixed hex string
        """
        if self.account is None:
            raise NotConnected("mint() requires a write handle; call connect() first")

        func: Any = self._contract.functions.mint(uri, price_wei)
        tx_hash: Any
        if self._signer is not None:
            tx: dict[str, Any] = await func.build_transaction({
                "from": self.account,
                "value": value_wei,
                "nonce": await self._w3.eth.get_transaction_count(self.account),
            })
            signed_tx: Any = self._signer.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        else:
            tx_hash = await func.transact({"from": self.account, "value": value_wei})

        logger.info(f"Submitted mint for {uri} from {self.account}")
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout_seconds: float = 120) -> Any:
        """
        Wait for a transaction receipt.

        Raises:
            TransactionFailed: If no receipt arrives in time or the
                transaction reverted
        """
        try:
            receipt: Any = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout_seconds  # type: ignore[arg-type]
            )
        except TimeExhausted as e:
            raise TransactionFailed(
                f"No receipt for {tx_hash} after {timeout_seconds}s", tx_hash=tx_hash
            ) from e

        if receipt.get("status") == 0:
            logger.error(f"Transaction {tx_hash} reverted")
            raise TransactionFailed(f"Transaction {tx_hash} reverted", tx_hash=tx_hash)
        return receipt

    async def close(self) -> None:
        provider: Any = self._w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()


class ContractGateway:
    """
    Produces read-only and signer-bound handles to the marketplace contract.

    The gateway exclusively owns the wallet session and the live handles.
    Callers are notified of account and handle changes through listeners
    registered with on_account_changed() and on_handle_changed().
    """

    def __init__(
        self,
        config: MarketSyncConfig | None = None,
        wallet: WalletProvider | None = None,
        *,
        rpc_url: str | None = None,
        contract_address: str | None = None,
    ) -> None:
        self.config = config or get_config()
        self._wallet = wallet
        self._rpc_url = rpc_url or self.config.get_rpc_endpoint()
        self._contract_address = contract_address or self.config.contract_address
        self._generations = itertools.count(1)

        self._read: ContractHandle | None = None
        self._write: ContractHandle | None = None
        self._current_account: str | None = None

        self._account_listeners: list[Listener] = []
        self._handle_listeners: list[Listener] = []

    # ==================== Observables ====================

    @property
    def current_account(self) -> str | None:
        return self._current_account

    @property
    def is_connected(self) -> bool:
        return self._current_account is not None

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    def on_account_changed(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for account changes. Returns an unsubscribe function."""
        self._account_listeners.append(listener)
        return lambda: self._remove(self._account_listeners, listener)

    def on_handle_changed(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for read handle replacement. Returns an unsubscribe function."""
        self._handle_listeners.append(listener)
        return lambda: self._remove(self._handle_listeners, listener)

    @staticmethod
    def _remove(listeners: list[Listener], listener: Listener) -> None:
        if listener in listeners:
            listeners.remove(listener)

    async def _notify(self, listeners: list[Listener], value: Any) -> None:
        for listener in list(listeners):
            if inspect.iscoroutinefunction(listener):
                await listener(value)
            else:
                listener(value)

    async def _set_account(self, account: str | None) -> None:
        if account == self._current_account:
            return
        self._current_account = account
        self._write = None
        logger.info(f"Current account changed to {account}")
        await self._notify(self._account_listeners, account)

    # ==================== Wallet Session ====================

    async def connect(self) -> str:
        """
        Establish a wallet session.

        Returns:
            The connected account address

        Raises:
            WalletUnavailable: If no wallet provider is present
            UserRejected: If the user declines authorization
        """
        if self._wallet is None:
            raise WalletUnavailable("No wallet provider present in the environment")

        accounts = await self._wallet.request_accounts()
        if not accounts:
            raise UserRejected("Wallet returned no accounts")

        await self._set_account(accounts[0])
        return accounts[0]

    async def check_connection(self) -> str | None:
        """Restore an already-authorized session without prompting the user."""
        if self._wallet is None:
            return None
        accounts = await self._wallet.current_accounts()
        await self._set_account(accounts[0] if accounts else None)
        return self._current_account

    async def disconnect(self) -> None:
        await self._set_account(None)

    # ==================== Handles ====================

    def _new_web3(self, rpc_url: str) -> AsyncWeb3:
        return AsyncWeb3(AsyncHTTPProvider(rpc_url))

    def read_handle(self) -> ContractHandle:
        """Return the non-signing handle. Never requires a wallet."""
        if self._read is None:
            self._read = ContractHandle(
                self._new_web3(self._rpc_url),
                self._contract_address,
                generation=next(self._generations),
                rpc_url=self._rpc_url,
            )
        return self._read

    def write_handle(self) -> ContractHandle:
        """
        Return a handle bound to the connected account.

        Raises:
            NotConnected: If connect() never succeeded
        """
        if self._current_account is None:
            raise NotConnected("No wallet connected. Call connect() first.")
        if self._write is None:
            signer = self._wallet.signer if self._wallet is not None else None
            self._write = ContractHandle(
                self._new_web3(self._rpc_url),
                self._contract_address,
                generation=self.read_handle().generation,
                rpc_url=self._rpc_url,
                account=self._current_account,
                signer=signer,
            )
        return self._write

    async def switch_network(
        self,
        rpc_url: str,
        contract_address: str | None = None,
    ) -> ContractHandle:
        """
        Point the gateway at another endpoint.

        The old handles are replaced, listeners are notified with the new read
        handle, and the old providers are closed afterwards.
        """
        old_read, old_write = self._read, self._write
        self._rpc_url = rpc_url
        if contract_address:
            self._contract_address = contract_address
        self._read = None
        self._write = None

        handle = self.read_handle()
        logger.info(f"Switched network to {rpc_url} (generation {handle.generation})")
        await self._notify(self._handle_listeners, handle)

        for old in (old_read, old_write):
            if old is not None:
                await old.close()
        return handle

    async def close(self) -> None:
        for handle in (self._read, self._write):
            if handle is not None:
                await handle.close()
        self._read = None
        self._write = None
        close_wallet = getattr(self._wallet, "close", None)
        if close_wallet is not None:
            await close_wallet()
