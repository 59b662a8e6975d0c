"""
DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative amounts)
4. Rounding at calculation boundary only
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
from bson import Decimal128
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be used as a financial amount"""
    pass


def to_decimal(value: Union[float, int, str, Decimal, Decimal128, None]) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise FinancialPrecisionError(f"Not a numeric amount: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Union[float, int, str, Decimal]) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Union[float, int, str, Decimal]) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def format_financial(value: Union[float, int, str, Decimal]) -> str:
    """Render a value with exactly two decimals, e.g. 20 -> '20.00'"""
    return f"{round_financial(value):.{DECIMAL_PLACES}f}"


def safe_divide(numerator: Union[float, int, Decimal],
                denominator: Union[float, int, Decimal]) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == Decimal('0'):
        return Decimal('0')
    return to_decimal(numerator) / denom


def calculate_ratio_percentage(part: Union[float, int, Decimal],
                               whole: Union[float, int, Decimal]) -> Decimal:
    """
    part / whole * 100, or 0 when whole is not positive.
    Example: calculate_ratio_percentage(200, 1000) = 20
    """
    if to_decimal(whole) <= Decimal('0'):
        return Decimal('0')
    return safe_divide(part, whole) * Decimal('100')
