"""
Hedera mirror node client.

Read-only REST access used around native-ledger payments: resolving a
provider's EVM address to the ``0.0.x`` account ID native wallets expect,
and looking up transactions by ID.

Example:
    >>> async with MirrorNodeClient.for_network("hedera-testnet") as mirror:
    ...     account_id = await mirror.resolve_account_id("0xProvider...")
    ...     payload = builder.build(
    ...         snapshot, WalletProtocol.NATIVE_LEDGER_URI, recipient=account_id
    ...     )
"""

from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from gig_escrow_sdk.exceptions import GatewayError, GatewayErrorKind, NotFoundError
from gig_escrow_sdk.networks import get_network, is_valid_account_id, is_valid_evm_address


class MirrorBalance(BaseModel):
    """Account balance in tinybar."""

    balance: int
    timestamp: Optional[str] = None


class MirrorAccount(BaseModel):
    """Account record from ``/api/v1/accounts/{idOrAlias}``."""

    account: str
    evm_address: Optional[str] = None
    balance: Optional[MirrorBalance] = None
    memo: str = ""
    deleted: bool = False


class MirrorTransfer(BaseModel):
    """Single HBAR transfer inside a transaction."""

    account: str
    amount: int
    is_approval: bool = False


class MirrorTransaction(BaseModel):
    """Transaction record from ``/api/v1/transactions/{id}``."""

    transaction_id: str
    consensus_timestamp: str
    result: str
    name: str
    memo_base64: str = ""
    charged_tx_fee: int = 0
    transfers: list[MirrorTransfer] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result == "SUCCESS"


class MirrorNodeClient:
    """
    Async client for the Hedera mirror node REST API.

    Args:
        base_url: Mirror node base URL
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str = "https://testnet.mirrornode.hedera.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def for_network(cls, network_name: str, **kwargs: Any) -> "MirrorNodeClient":
        network = get_network(network_name)
        if network is None or not network.mirror_node_url:
            raise ValueError(f"No mirror node configured for network {network_name}")
        return cls(network.mirror_node_url, **kwargs)

    async def __aenter__(self) -> "MirrorNodeClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _get_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def _get(self, path: str, kind: str, record: str) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.get(url, headers=self._get_headers())
        except httpx.TimeoutException as e:
            raise GatewayError(GatewayErrorKind.TIMEOUT, raw_message=str(e)) from e
        except httpx.ConnectError as e:
            raise GatewayError(GatewayErrorKind.CONNECTION_REFUSED, raw_message=str(e)) from e
        except httpx.HTTPError as e:
            raise GatewayError(GatewayErrorKind.OTHER, raw_message=str(e)) from e

        if response.status_code == 404:
            raise NotFoundError(kind, record, response.text)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GatewayError(GatewayErrorKind.OTHER, raw_message=response.text) from e
        return response.json()

    async def get_account(self, id_or_address: str) -> MirrorAccount:
        """
        Get an account by ``0.0.x`` ID or EVM address.

        Raises:
            NotFoundError: If the mirror node does not know the account
            GatewayError: On transport or server errors
        """
        if not (is_valid_account_id(id_or_address) or is_valid_evm_address(id_or_address)):
            raise ValueError(f"Invalid account ID or EVM address: {id_or_address}")
        data = await self._get(f"/api/v1/accounts/{id_or_address}", "account", id_or_address)
        return MirrorAccount.model_validate(data)

    async def resolve_account_id(self, evm_address: str) -> str:
        """Resolve an EVM address to its native ``shard.realm.num`` account ID."""
        account = await self.get_account(evm_address)
        return account.account

    async def get_transaction(self, transaction_id: str) -> MirrorTransaction:
        """
        Get a transaction by ID (``0.0.123-1700000000-000000000`` format).

        Returns the first (parent) record when the mirror node returns several.
        """
        data = await self._get(f"/api/v1/transactions/{transaction_id}", "transaction", transaction_id)
        transactions = data.get("transactions") or []
        if not transactions:
            raise NotFoundError("transaction", transaction_id)
        return MirrorTransaction.model_validate(transactions[0])

    async def health_check(self) -> bool:
        """
        Check mirror node health.

        Returns:
            True if healthy
        """
        try:
            response = await self._client.get(f"{self.base_url}/api/v1/network/supply")
            return response.is_success
        except httpx.HTTPError:
            return False
