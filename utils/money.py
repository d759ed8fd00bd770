"""
Money conversion utilities
Internal arithmetic is integer minor units (kobo); Decimal naira only at the edges
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from config import Config

logger = logging.getLogger(__name__)

NGN_PRECISION = Decimal("0.01")


class MoneyConversionError(ValueError):
    """Raised when an external amount cannot be represented in minor units"""
    pass


def to_minor_units(amount: Union[str, int, Decimal]) -> int:
    """Convert a major-unit amount (naira) to integer kobo.

    Floats are refused outright; callers must pass strings, ints or Decimals.
    """
    if isinstance(amount, float):
        raise MoneyConversionError("float amounts are not accepted, pass str or Decimal")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise MoneyConversionError(f"invalid amount {amount!r}") from e
    if not value.is_finite():
        raise MoneyConversionError(f"invalid amount {amount!r}")

    quantized = value.quantize(NGN_PRECISION, rounding=ROUND_HALF_UP)
    if quantized != value:
        logger.warning(f"⚠️ MONEY_ROUNDING: {value} rounded to {quantized}")
    return int(quantized * Config.MINOR_UNITS_PER_MAJOR)


def to_major_units(amount_minor: int) -> Decimal:
    """Convert kobo back to a two-decimal naira Decimal"""
    return (Decimal(int(amount_minor)) / Config.MINOR_UNITS_PER_MAJOR).quantize(
        NGN_PRECISION, rounding=ROUND_HALF_UP
    )


def format_naira(amount_minor: int) -> str:
    """Human readable amount for logs and notifications"""
    return f"₦{to_major_units(amount_minor):,.2f}"
