"""
Contract gateway: typed access to the deployed gig marketplace contract.

``ContractGateway`` is the protocol the reconciler and payment flow depend
on; any object with these coroutine methods can be injected (tests use an
in-memory fake). ``Web3ContractGateway`` implements it with web3.py.

Design:
- Sync web3 calls run in the default executor so polling never blocks the
  event loop
- Embedded minimal ABI: only the functions this SDK calls
- Writes use ``transact()`` from a signer-managed account (the JSON-RPC
  node or an injected wallet signs); the SDK never holds private keys
- Read failures surface as NotFoundError / GatewayError, write failures as
  classified PaymentErrors

Example:
    >>> gateway = Web3ContractGateway(
    ...     contract_address="0x...",
    ...     rpc_url="https://testnet.hashio.io/api",
    ...     sender_address="0xClient...",
    ... )
    >>> order = await gateway.get_order(7)
    >>> handle = await gateway.pay_order(7)
    >>> receipt = await handle.wait()
"""

import asyncio
import functools
import logging
import re
from typing import Any, Callable, Optional, Protocol, TypeVar, runtime_checkable

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from gig_escrow_sdk.amounts import EVM_DECIMALS, from_base_units, to_base_units
from gig_escrow_sdk.errors import classify_error, raw_message
from gig_escrow_sdk.exceptions import (
    GatewayError,
    GatewayErrorKind,
    NetworkTimeoutError,
    NotFoundError,
)
from gig_escrow_sdk.models import Gig, Order, Receipt

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_NOT_FOUND_PATTERN = re.compile(r"(does not|doesn't) exist|not found|invalid (gig|order)", re.I)

_GIG_COMPONENTS = [
    {"name": "id", "type": "uint256"},
    {"name": "seller", "type": "address"},
    {"name": "title", "type": "string"},
    {"name": "description", "type": "string"},
    {"name": "category", "type": "string"},
    {"name": "price", "type": "uint256"},
    {"name": "deliveryTime", "type": "string"},
    {"name": "active", "type": "bool"},
    {"name": "createdAt", "type": "uint256"},
]

_ORDER_COMPONENTS = [
    {"name": "id", "type": "uint256"},
    {"name": "gigId", "type": "uint256"},
    {"name": "client", "type": "address"},
    {"name": "provider", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "isPaid", "type": "bool"},
    {"name": "isCompleted", "type": "bool"},
    {"name": "paymentReleased", "type": "bool"},
    {"name": "createdAt", "type": "uint256"},
]

# Marketplace ABI (minimal, for the functions we call)
MARKETPLACE_ABI = [
    {
        "type": "function",
        "name": "getGig",
        "stateMutability": "view",
        "inputs": [{"name": "_gigId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "tuple", "components": _GIG_COMPONENTS}],
    },
    {
        "type": "function",
        "name": "getOrder",
        "stateMutability": "view",
        "inputs": [{"name": "_orderId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "tuple", "components": _ORDER_COMPONENTS}],
    },
    {
        "type": "function",
        "name": "getAllActiveGigs",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256[]"}],
    },
    {
        "type": "function",
        "name": "orderGig",
        "stateMutability": "payable",
        "inputs": [{"name": "_gigId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "payOrder",
        "stateMutability": "payable",
        "inputs": [{"name": "_orderId", "type": "uint256"}],
        "outputs": [],
    },
]


@runtime_checkable
class TxHandle(Protocol):
    """A broadcast transaction."""

    hash: str

    async def wait(self) -> Receipt:
        """Block until mined; raises NetworkTimeoutError past the gateway timeout."""
        ...


@runtime_checkable
class ContractGateway(Protocol):
    """Read/write access to the escrow contract."""

    receipt_timeout: float

    async def get_gig(self, gig_id: int) -> Gig: ...

    async def get_order(self, order_id: int) -> Order: ...

    async def pay_order(self, order_id: int) -> TxHandle: ...

    async def order_gig(self, gig_id: int, payment_amount: int) -> TxHandle: ...

    async def get_all_active_gig_ids(self) -> list[int]: ...


def _gateway_error(error: BaseException) -> GatewayError:
    """Map a transport-level exception to a GatewayError."""
    message = raw_message(error)
    if isinstance(error, (requests.exceptions.Timeout, asyncio.TimeoutError, TimeoutError)):
        return GatewayError(GatewayErrorKind.TIMEOUT, raw_message=message)
    if isinstance(error, (requests.exceptions.ConnectionError, ConnectionRefusedError)):
        return GatewayError(GatewayErrorKind.CONNECTION_REFUSED, raw_message=message)
    return GatewayError(GatewayErrorKind.OTHER, raw_message=message)


def _is_transport_error(error: BaseException) -> bool:
    return isinstance(
        error,
        (requests.exceptions.RequestException, ConnectionError, asyncio.TimeoutError, TimeoutError),
    )


class Web3TxHandle:
    """TxHandle backed by ``eth_getTransactionReceipt`` polling."""

    def __init__(self, gateway: "Web3ContractGateway", tx_hash: str):
        self._gateway = gateway
        self.hash = tx_hash

    async def wait(self) -> Receipt:
        try:
            receipt = await self._gateway._run(
                self._gateway.w3.eth.wait_for_transaction_receipt,
                self.hash,
                timeout=self._gateway.receipt_timeout,
                poll_latency=self._gateway.poll_latency,
            )
        except (TimeExhausted, TransactionNotFound) as e:
            raise NetworkTimeoutError(raw_message=raw_message(e)) from e
        except Exception as e:
            if _is_transport_error(e):
                raise _gateway_error(e) from e
            raise

        tx_hash = receipt["transactionHash"]
        return Receipt(
            status=int(receipt["status"]),
            hash=tx_hash if isinstance(tx_hash, str) else "0x" + bytes(tx_hash).hex(),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )


class Web3ContractGateway:
    """
    ContractGateway implementation over a JSON-RPC endpoint.

    Args:
        contract_address: Marketplace contract address
        rpc_url: JSON-RPC endpoint (Hashio relay for Hedera)
        sender_address: Signer-managed account used as ``from`` for writes
        receipt_timeout: Seconds to wait for a receipt before NetworkTimeout
        request_timeout: HTTP timeout per JSON-RPC request
        poll_latency: Seconds between receipt polls
        w3: Pre-built Web3 instance (overrides ``rpc_url``)
    """

    def __init__(
        self,
        contract_address: str,
        *,
        rpc_url: str = "https://testnet.hashio.io/api",
        sender_address: Optional[str] = None,
        receipt_timeout: float = 120.0,
        request_timeout: float = 30.0,
        poll_latency: float = 2.0,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 or Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.sender_address = Web3.to_checksum_address(sender_address) if sender_address else None
        self.receipt_timeout = receipt_timeout
        self.poll_latency = poll_latency
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=MARKETPLACE_ABI)

    @classmethod
    def from_config(cls, config: Any) -> "Web3ContractGateway":
        """Build a gateway from an ``EscrowConfig``."""
        return cls(
            config.contract_address,
            rpc_url=config.resolved_rpc_url,
            sender_address=config.sender_address,
            receipt_timeout=config.receipt_timeout,
            request_timeout=config.request_timeout,
        )

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _read(self, kind: str, record_id: int, call: Any) -> Any:
        try:
            return await self._run(call.call)
        except ContractLogicError as e:
            if _NOT_FOUND_PATTERN.search(raw_message(e)):
                raise NotFoundError(kind, record_id, raw_message(e)) from e
            raise GatewayError(GatewayErrorKind.OTHER, raw_message=raw_message(e)) from e
        except Exception as e:
            raise _gateway_error(e) from e

    async def get_gig(self, gig_id: int) -> Gig:
        raw = await self._read("gig", gig_id, self.contract.functions.getGig(gig_id))
        (record_id, seller, title, description, category, price,
         delivery_time, active, created_at) = raw
        if record_id == 0 or seller == ZERO_ADDRESS:
            raise NotFoundError("gig", gig_id)
        return Gig(
            id=record_id,
            provider=seller,
            title=title,
            description=description,
            category=category,
            price=from_base_units(price, EVM_DECIMALS),
            delivery_time=delivery_time,
            active=active,
            created_at=created_at,
        )

    async def get_order(self, order_id: int) -> Order:
        raw = await self._read("order", order_id, self.contract.functions.getOrder(order_id))
        (record_id, gig_id, client, provider, amount,
         is_paid, is_completed, payment_released, created_at) = raw
        if record_id == 0 or client == ZERO_ADDRESS:
            raise NotFoundError("order", order_id)
        return Order(
            id=record_id,
            gig_id=gig_id,
            client=client,
            provider=provider,
            amount=from_base_units(amount, EVM_DECIMALS),
            is_paid=is_paid,
            is_completed=is_completed,
            payment_released=payment_released,
            created_at=created_at,
        )

    async def get_all_active_gig_ids(self) -> list[int]:
        try:
            ids = await self._run(self.contract.functions.getAllActiveGigs().call)
        except Exception as e:
            raise _gateway_error(e) from e
        return [int(i) for i in ids]

    async def _transact(self, call: Any, value: int) -> Web3TxHandle:
        if not self.sender_address:
            raise GatewayError(GatewayErrorKind.OTHER, "No sender account configured for writes")
        try:
            tx_hash = await self._run(call.transact, {"from": self.sender_address, "value": value})
        except Exception as e:
            if _is_transport_error(e):
                raise _gateway_error(e) from e
            raise classify_error(e) from e
        handle = Web3TxHandle(self, tx_hash if isinstance(tx_hash, str) else "0x" + bytes(tx_hash).hex())
        logger.info(f"Broadcast {call.fn_name} tx {handle.hash}")
        return handle

    async def pay_order(self, order_id: int) -> Web3TxHandle:
        """Pay an order's escrow amount via ``payOrder``."""
        order = await self.get_order(order_id)
        value = to_base_units(order.amount, EVM_DECIMALS)
        return await self._transact(self.contract.functions.payOrder(order_id), value)

    async def order_gig(self, gig_id: int, payment_amount: int) -> Web3TxHandle:
        """Create an order for a gig, paying ``payment_amount`` weibar."""
        return await self._transact(self.contract.functions.orderGig(gig_id), payment_amount)
