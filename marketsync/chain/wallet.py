"""
Wallet Providers

A wallet provider is the environment's source of user accounts. The gateway
only depends on the WalletProvider protocol:

- request_accounts(): prompts for authorization, may be rejected
- current_accounts(): non-prompting, returns the already-authorized accounts

Two implementations are provided. LocalAccountWallet holds an eth-account key
and signs transactions locally. RpcWalletProvider asks a JSON-RPC node that
manages its own accounts (a development node or a signer proxy).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from eth_account import Account
from eth_account.signers.local import LocalAccount  # type: ignore[import-not-found]
from web3 import AsyncHTTPProvider
from web3.types import RPCEndpoint

from ..errors import UserRejected, WalletUnavailable

logger: logging.Logger = logging.getLogger(__name__)

# EIP-1193 provider error codes
USER_REJECTED_REQUEST = 4001
UNAUTHORIZED = 4100

ApprovalCallback = Callable[[str], Awaitable[bool]]


@runtime_checkable
class WalletProvider(Protocol):
    """Protocol every wallet provider implements."""

    @property
    def signer(self) -> LocalAccount | None:
        """Local signing account, or None when the provider signs remotely."""
        ...

    async def request_accounts(self) -> list[str]:
        ...

    async def current_accounts(self) -> list[str]:
        ...


class LocalAccountWallet:
    """
    Wallet backed by a private key held in process.

    An optional approval callback models the user's authorization prompt:
    when it returns False the request is rejected.
    """

    def __init__(self, private_key: str, approve: ApprovalCallback | None = None) -> None:
        try:
            self._account: LocalAccount = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise WalletUnavailable(f"Invalid wallet private key: {e}") from e
        self._approve = approve
        self._authorized = False

    @property
    def signer(self) -> LocalAccount:
        return self._account

    @property
    def address(self) -> str:
        return str(self._account.address)

    async def request_accounts(self) -> list[str]:
        if self._approve is not None and not await self._approve(self.address):
            raise UserRejected("User rejected the account request")
        self._authorized = True
        return [self.address]

    async def current_accounts(self) -> list[str]:
        return [self.address] if self._authorized else []


class RpcWalletProvider:
    """
    Wallet whose accounts are managed by a JSON-RPC node.

    Transactions are signed by the node, so ``signer`` is None.
    """

    def __init__(self, rpc_url: str, provider: Any | None = None) -> None:
        self._rpc_url = rpc_url
        self._provider = provider or AsyncHTTPProvider(rpc_url)

    @property
    def signer(self) -> None:
        return None

    async def _call(self, method: str) -> list[str]:
        try:
            response: Any = await self._provider.make_request(RPCEndpoint(method), [])
        except (OSError, asyncio.TimeoutError) as e:
            raise WalletUnavailable(f"Wallet provider at {self._rpc_url} unreachable: {e}") from e

        error = response.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if code in (USER_REJECTED_REQUEST, UNAUTHORIZED):
                raise UserRejected(message)
            raise WalletUnavailable(f"{method} failed: {message}")

        result = response.get("result") or []
        return [str(account) for account in result]

    async def request_accounts(self) -> list[str]:
        return await self._call("eth_requestAccounts")

    async def current_accounts(self) -> list[str]:
        try:
            return await self._call("eth_accounts")
        except UserRejected:
            return []

    async def close(self) -> None:
        if hasattr(self._provider, "disconnect"):
            await self._provider.disconnect()
