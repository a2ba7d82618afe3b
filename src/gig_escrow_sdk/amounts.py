"""
Exact fixed-point conversion between display amounts and base units.

Display amounts are decimal strings (``"1.5"``); base units are integers in
the smallest denomination (weibar for 18-decimal EVM values, tinybar for
the native 8-decimal ledger). Conversion is done on the digit strings with
integer arithmetic only, never through ``float``.

Canonical display form: no leading zeros in the integer part, no trailing
zeros in the fraction, no dangling ``.``, and ``"0"`` for zero. Converting a
canonical amount to base units and back yields the same string.

Example:
    >>> to_base_units("1.5", 18)
    1500000000000000000
    >>> from_base_units(1500000000000000000, 18)
    '1.5'
"""

import re
from decimal import Decimal
from typing import Union

from gig_escrow_sdk.exceptions import PrecisionError

# Decimals used by EVM-style value fields
EVM_DECIMALS = 18

_AMOUNT_PATTERN = re.compile(r"^(\d+)(?:\.(\d+))?$", re.ASCII)

AmountLike = Union[str, int, Decimal]


def _as_text(amount: AmountLike) -> str:
    if isinstance(amount, bool) or isinstance(amount, float):
        raise TypeError(f"Amounts must be str, int or Decimal, not {type(amount).__name__}")
    if isinstance(amount, Decimal):
        if not amount.is_finite():
            raise ValueError(f"Invalid amount: {amount}")
        return format(amount, "f")
    if isinstance(amount, int):
        return str(amount)
    return amount.strip()


def is_decimal_amount(value: str) -> bool:
    """Check that a string is a non-negative plain decimal (no sign, no exponent)."""
    if not isinstance(value, str):
        return False
    return bool(_AMOUNT_PATTERN.match(value.strip()))


def _split(amount: AmountLike) -> tuple[str, str]:
    text = _as_text(amount)
    match = _AMOUNT_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid decimal amount: {text!r}")
    whole, fraction = match.group(1), match.group(2) or ""
    return whole.lstrip("0") or "0", fraction.rstrip("0")


def normalize_amount(amount: AmountLike) -> str:
    """
    Return the canonical display form of an amount.

    Args:
        amount: Decimal string, int or Decimal

    Returns:
        Canonical string, e.g. ``"001.500"`` -> ``"1.5"``

    Raises:
        ValueError: If the amount is malformed or negative
    """
    whole, fraction = _split(amount)
    return f"{whole}.{fraction}" if fraction else whole


def to_base_units(amount: AmountLike, decimals: int) -> int:
    """
    Convert a display amount to integer base units.

    Trailing fractional zeros are insignificant; any other digit beyond
    ``decimals`` cannot be represented and is rejected rather than rounded.

    Args:
        amount: Display amount, e.g. ``"1.5"``
        decimals: Denomination scale (18 for EVM values, 8 for tinybar)

    Returns:
        Exact integer amount in base units

    Raises:
        PrecisionError: If the amount has more significant fractional digits
            than ``decimals``
        ValueError: If the amount is malformed or negative
    """
    if decimals < 0:
        raise ValueError(f"decimals must be >= 0, got {decimals}")
    whole, fraction = _split(amount)
    if len(fraction) > decimals:
        raise PrecisionError(_as_text(amount), decimals)
    return int(whole) * 10**decimals + int(fraction.ljust(decimals, "0") or "0")


def from_base_units(value: Union[int, str], decimals: int) -> str:
    """
    Convert integer base units back to a canonical display amount.

    Args:
        value: Base units as int or integer string
        decimals: Denomination scale

    Returns:
        Canonical decimal string

    Raises:
        ValueError: If the value is negative or not an integer
    """
    if isinstance(value, bool):
        raise TypeError("Base units must be an int or integer string")
    if isinstance(value, str):
        if not re.fullmatch(r"[0-9]+", value.strip()):
            raise ValueError(f"Invalid base unit amount: {value!r}")
        value = int(value.strip())
    if not isinstance(value, int):
        raise TypeError(f"Base units must be an int, not {type(value).__name__}")
    if value < 0:
        raise ValueError(f"Base units must be non-negative, got {value}")
    if decimals == 0:
        return str(value)

    whole, remainder = divmod(value, 10**decimals)
    fraction = str(remainder).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{fraction}" if fraction else str(whole)


def rescale(value: int, from_decimals: int, to_decimals: int) -> int:
    """
    Move base units between denominations (e.g. weibar -> tinybar).

    Raises:
        PrecisionError: If scaling down would drop non-zero digits
    """
    if to_decimals >= from_decimals:
        return value * 10 ** (to_decimals - from_decimals)
    factor = 10 ** (from_decimals - to_decimals)
    scaled, remainder = divmod(value, factor)
    if remainder:
        raise PrecisionError(from_base_units(value, from_decimals), to_decimals)
    return scaled
