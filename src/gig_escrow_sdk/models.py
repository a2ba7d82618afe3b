"""
Shared data types for gig escrow reconciliation.

Contract records (Gig, Order) and wallet payloads are pydantic models with
camelCase aliases so they validate directly from contract/JSON records.
Reconciler and payment-flow results are plain dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from gig_escrow_sdk.amounts import is_decimal_amount
from gig_escrow_sdk.exceptions import PaymentError

# Order fields whose changes constitute a lifecycle transition
TRACKED_FIELDS = ("is_paid", "is_completed", "payment_released")


class OrderStatus(str, Enum):
    """Lifecycle stage derived from an order's escrow flags."""

    PENDING = "pending"  # Created, awaiting payment
    PAID = "paid"  # Funds held in contract escrow
    COMPLETED = "completed"  # Provider delivered, funds still held
    RELEASED = "released"  # Funds released to provider (terminal)


class WalletProtocol(str, Enum):
    """Wallet protocols a payment payload can target."""

    EVM_DIRECT_CALL = "evm_direct_call"  # ethereum: URI calling the escrow contract
    EVM_URI_AMOUNT = "evm_uri_amount"  # ethereum: URI with a plain value transfer
    NATIVE_LEDGER_URI = "native_ledger_uri"  # hedera://pay deep link


class PaymentState(str, Enum):
    """Payment submission state machine."""

    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def _check_amount(value: str) -> str:
    if not is_decimal_amount(value):
        raise ValueError(f"Invalid decimal amount: {value!r}")
    return value


class Gig(BaseModel):
    """Service descriptor published by a provider."""

    id: int
    provider: str
    title: str
    description: str = ""
    price: str
    category: str = ""
    delivery_time: str = Field("", alias="deliveryTime")
    active: bool = True
    requirements: str = ""
    tags: list[str] = Field(default_factory=list)
    created_at: Optional[int] = Field(None, alias="createdAt")

    @field_validator("price")
    @classmethod
    def _validate_price(cls, value: str) -> str:
        return _check_amount(value)

    class Config:
        populate_by_name = True
        frozen = True


class Order(BaseModel):
    """Escrow record for a client ordering a gig."""

    id: int
    gig_id: int = Field(..., alias="gigId")
    client: str
    provider: str
    amount: str
    is_paid: bool = Field(False, alias="isPaid")
    is_completed: bool = Field(False, alias="isCompleted")
    payment_released: bool = Field(False, alias="paymentReleased")
    created_at: int = Field(0, alias="createdAt")

    @field_validator("amount")
    @classmethod
    def _validate_amount(cls, value: str) -> str:
        return _check_amount(value)

    @model_validator(mode="after")
    def _check_release_invariant(self) -> "Order":
        if self.payment_released and not (self.is_paid and self.is_completed):
            raise ValueError(
                f"Order {self.id}: paymentReleased requires isPaid and isCompleted"
            )
        return self

    @property
    def status(self) -> OrderStatus:
        if self.payment_released:
            return OrderStatus.RELEASED
        if self.is_completed:
            return OrderStatus.COMPLETED
        if self.is_paid:
            return OrderStatus.PAID
        return OrderStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.payment_released

    class Config:
        populate_by_name = True
        frozen = True


class PaymentPayload(BaseModel):
    """Wallet-protocol-specific payment instruction."""

    uri: str
    amount_base_units: str = Field(..., alias="amountBaseUnits")
    amount: str
    recipient: str
    memo: str
    protocol: WalletProtocol
    chain_id: int = Field(..., alias="chainId")
    data: Optional[str] = None  # Hex call data or memo bytes (EVM only)

    class Config:
        populate_by_name = True
        frozen = True


@dataclass(frozen=True)
class OrderSnapshot:
    """Point-in-time cached view of an order and its gig."""

    order: Order
    gig: Gig
    sequence_number: int
    fetched_at: datetime

    @property
    def order_id(self) -> int:
        return self.order.id


@dataclass(frozen=True)
class LifecycleEvent:
    """Emitted when an accepted snapshot changes a tracked order field."""

    order_id: int
    previous_snapshot: Optional[OrderSnapshot]
    new_snapshot: OrderSnapshot
    changed_fields: tuple[str, ...]

    @property
    def previous_status(self) -> Optional[OrderStatus]:
        if self.previous_snapshot is None:
            return None
        return self.previous_snapshot.order.status

    @property
    def new_status(self) -> OrderStatus:
        return self.new_snapshot.order.status


@dataclass(frozen=True)
class Receipt:
    """Mined transaction receipt. ``status`` is 1 on success, 0 on revert."""

    status: int
    hash: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


@dataclass
class PaymentResult:
    """Outcome of a payment submission."""

    key: str
    state: PaymentState
    tx_hash: Optional[str] = None
    receipt: Optional[Receipt] = None
    error: Optional[PaymentError] = None
    attempts: int = 0
    history: list[PaymentState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == PaymentState.CONFIRMED

    @property
    def transaction_hash(self) -> Optional[str]:
        return self.receipt.hash if self.receipt else self.tx_hash

    def raise_for_error(self) -> None:
        """Re-raise the classified error of a failed submission."""
        if self.error is not None:
            raise self.error
