"""
Classification of raw gateway and signer errors.

``classify_error`` is total: every exception maps to exactly one
``PaymentError`` subclass, defaulting to ``UnknownPaymentError`` with the
original message preserved.
"""

import asyncio
import re
from typing import Any, Optional

from web3.exceptions import ContractLogicError, TimeExhausted

from gig_escrow_sdk.exceptions import (
    ContractRevertError,
    GatewayError,
    GatewayErrorKind,
    InsufficientFundsError,
    NetworkTimeoutError,
    PaymentError,
    UnknownPaymentError,
    UserRejectedError,
)

# EIP-1193 provider error codes
EIP1193_USER_REJECTED = 4001

_USER_REJECTED_CODES = {"ACTION_REJECTED", EIP1193_USER_REJECTED, str(EIP1193_USER_REJECTED)}
_INSUFFICIENT_FUNDS_CODES = {"INSUFFICIENT_FUNDS", "INSUFFICIENT_PAYER_BALANCE"}
_TIMEOUT_CODES = {"TIMEOUT", "NETWORK_ERROR"}

_USER_REJECTED_PATTERN = re.compile(r"user (rejected|denied)|rejected by user|request rejected", re.I)
_INSUFFICIENT_FUNDS_PATTERN = re.compile(r"insufficient (funds|balance)|INSUFFICIENT_PAYER_BALANCE", re.I)
_TIMEOUT_PATTERN = re.compile(r"timed? ?out|timeout", re.I)
_REVERT_PATTERN = re.compile(r"execution reverted(?::\s*(?P<reason>.*))?|CONTRACT_REVERT_EXECUTED", re.I)


def _error_code(error: BaseException) -> Optional[Any]:
    code = getattr(error, "code", None)
    if code is None and error.args and isinstance(error.args[0], dict):
        code = error.args[0].get("code")
    return code


def raw_message(error: BaseException) -> str:
    """Best-effort original message of a provider error."""
    if isinstance(error, ContractLogicError) and error.message:
        return str(error.message)
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    if error.args and isinstance(error.args[0], dict):
        return str(error.args[0].get("message", error.args[0]))
    return str(error) or type(error).__name__


def decode_revert_reason(error: BaseException) -> str:
    """
    Extract a revert reason if the provider supplied one.

    Returns:
        The reason string, or "" when none is available
    """
    reason = getattr(error, "reason", None)
    if isinstance(reason, str) and reason:
        return reason
    match = _REVERT_PATTERN.search(raw_message(error))
    if match and match.group("reason"):
        return match.group("reason").strip()
    return ""


def classify_error(error: BaseException) -> PaymentError:
    """
    Map a raw gateway/signer error to the payment error taxonomy.

    Args:
        error: Any exception raised while submitting or confirming a payment

    Returns:
        Exactly one of UserRejectedError, InsufficientFundsError,
        NetworkTimeoutError, ContractRevertError or UnknownPaymentError
    """
    if isinstance(error, PaymentError):
        return error

    message = raw_message(error)

    if isinstance(error, GatewayError):
        if error.kind == GatewayErrorKind.TIMEOUT:
            return NetworkTimeoutError(raw_message=error.raw_message or message)
        return UnknownPaymentError(error.message, raw_message=error.raw_message or message)

    code = _error_code(error)
    # A typed revert keeps its reason even when the reason text reads like another category
    if isinstance(error, ContractLogicError) or code == "CALL_EXCEPTION":
        return ContractRevertError(decode_revert_reason(error), raw_message=message)
    if code in _USER_REJECTED_CODES or _USER_REJECTED_PATTERN.search(message):
        return UserRejectedError(raw_message=message)
    if code in _INSUFFICIENT_FUNDS_CODES or _INSUFFICIENT_FUNDS_PATTERN.search(message):
        return InsufficientFundsError(raw_message=message)
    if (
        isinstance(error, (asyncio.TimeoutError, TimeoutError, TimeExhausted))
        or code in _TIMEOUT_CODES
        or _TIMEOUT_PATTERN.search(message)
    ):
        return NetworkTimeoutError(raw_message=message)
    if _REVERT_PATTERN.search(message):
        return ContractRevertError(decode_revert_reason(error), raw_message=message)

    return UnknownPaymentError(raw_message=message)
