"""
gig-escrow-sdk: reconcile escrowed gig orders against an on-chain
marketplace contract and build wallet payment instructions.

Example:
    >>> from gig_escrow_sdk import (
    ...     EscrowConfig, EscrowPaymentFlow, OrderStateReconciler,
    ...     PaymentPayloadBuilder, Web3ContractGateway, WalletProtocol,
    ... )
    >>>
    >>> config = EscrowConfig.from_env()
    >>> gateway = Web3ContractGateway.from_config(config)
    >>> reconciler = OrderStateReconciler.from_config(gateway, config)
    >>> flow = EscrowPaymentFlow(gateway, reconciler)
    >>> builder = PaymentPayloadBuilder(config.network_config, config.contract_address)
    >>>
    >>> snapshot = await reconciler.fetch(7)
    >>> payload = builder.build(snapshot, WalletProtocol.EVM_DIRECT_CALL)
    >>> result = await flow.submit(7)
"""

from gig_escrow_sdk.amounts import from_base_units, normalize_amount, to_base_units
from gig_escrow_sdk.config import EscrowConfig
from gig_escrow_sdk.errors import classify_error
from gig_escrow_sdk.exceptions import (
    ContractRevertError,
    GatewayError,
    GatewayErrorKind,
    GigEscrowError,
    InsufficientFundsError,
    InvalidStateError,
    NetworkTimeoutError,
    NotFoundError,
    PaymentError,
    PrecisionError,
    StaleWriteRejected,
    UnknownPaymentError,
    UserRejectedError,
)
from gig_escrow_sdk.gateway import ContractGateway, TxHandle, Web3ContractGateway
from gig_escrow_sdk.mirror import MirrorNodeClient
from gig_escrow_sdk.models import (
    Gig,
    LifecycleEvent,
    Order,
    OrderSnapshot,
    OrderStatus,
    PaymentPayload,
    PaymentResult,
    PaymentState,
    Receipt,
    WalletProtocol,
)
from gig_escrow_sdk.payloads import PaymentPayloadBuilder, QRRenderer, truncate_memo
from gig_escrow_sdk.payment_flow import EscrowPaymentFlow
from gig_escrow_sdk.reconciler import OrderStateReconciler, PollingSubscription

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Amounts
    "from_base_units",
    "normalize_amount",
    "to_base_units",
    # Config
    "EscrowConfig",
    # Errors
    "classify_error",
    "ContractRevertError",
    "GatewayError",
    "GatewayErrorKind",
    "GigEscrowError",
    "InsufficientFundsError",
    "InvalidStateError",
    "NetworkTimeoutError",
    "NotFoundError",
    "PaymentError",
    "PrecisionError",
    "StaleWriteRejected",
    "UnknownPaymentError",
    "UserRejectedError",
    # Gateway
    "ContractGateway",
    "TxHandle",
    "Web3ContractGateway",
    "MirrorNodeClient",
    # Models
    "Gig",
    "LifecycleEvent",
    "Order",
    "OrderSnapshot",
    "OrderStatus",
    "PaymentPayload",
    "PaymentResult",
    "PaymentState",
    "Receipt",
    "WalletProtocol",
    # Components
    "PaymentPayloadBuilder",
    "QRRenderer",
    "truncate_memo",
    "EscrowPaymentFlow",
    "OrderStateReconciler",
    "PollingSubscription",
]
