"""
Error taxonomy for gig escrow operations.

Every caller-facing error carries a short classified ``message`` plus the
``raw_message`` it was derived from, so diagnostics never lose the
provider's original text.
"""

from enum import Enum
from typing import Optional, Union


class GigEscrowError(Exception):
    """Base class for all errors raised by this SDK."""

    default_message = "Escrow operation failed"

    def __init__(self, message: Optional[str] = None, raw_message: str = ""):
        self.message = message or self.default_message
        self.raw_message = raw_message
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.raw_message and self.raw_message != self.message:
            return f"{self.message} ({self.raw_message})"
        return self.message


class NotFoundError(GigEscrowError):
    """The requested gig or order id was never created on the contract."""

    default_message = "Record not found"

    def __init__(self, kind: str, record_id: Union[int, str], raw_message: str = ""):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} {record_id} not found", raw_message)


class GatewayErrorKind(str, Enum):
    """RPC-level failure category."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    OTHER = "other"


class GatewayError(GigEscrowError):
    """RPC-level failure talking to the contract."""

    default_message = "Gateway request failed"

    def __init__(
        self,
        kind: GatewayErrorKind = GatewayErrorKind.OTHER,
        message: Optional[str] = None,
        raw_message: str = "",
    ):
        self.kind = kind
        super().__init__(message or f"Gateway request failed ({kind.value})", raw_message)


class PaymentError(GigEscrowError):
    """Base for classified submission errors (see ``errors.classify_error``)."""


class UserRejectedError(PaymentError):
    default_message = "Transaction was rejected by user"


class InsufficientFundsError(PaymentError):
    default_message = "Insufficient funds for payment"


class NetworkTimeoutError(PaymentError):
    default_message = "Timed out waiting for the network"


class ContractRevertError(PaymentError):
    """The contract reverted. ``reason`` is empty when the provider gave none."""

    default_message = "Transaction reverted"

    def __init__(self, reason: str = "", raw_message: str = ""):
        self.reason = reason
        message = f"Transaction reverted: {reason}" if reason else self.default_message
        super().__init__(message, raw_message)


class UnknownPaymentError(PaymentError):
    default_message = "Payment failed"


class PrecisionError(GigEscrowError, ValueError):
    """An amount has more fractional digits than the target denomination."""

    def __init__(self, amount: str, decimals: int):
        self.amount = amount
        self.decimals = decimals
        super().__init__(
            f"Amount {amount!r} exceeds {decimals} fractional digits",
            amount,
        )


class StaleWriteRejected(GigEscrowError):
    """
    A fetch response older than the cached snapshot was discarded.

    Internal only: logged by the reconciler, never raised to callers.
    """

    def __init__(self, order_id: int, sequence_number: int, cached_sequence: int):
        self.order_id = order_id
        self.sequence_number = sequence_number
        self.cached_sequence = cached_sequence
        super().__init__(
            f"Discarded order {order_id} response #{sequence_number} "
            f"(cached #{cached_sequence})"
        )


class InvalidStateError(GigEscrowError):
    """An operation is not allowed in the payment flow's current state."""
