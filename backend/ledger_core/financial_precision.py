"""
REVENUE LEDGER: DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Currency-aware decimal precision (2 places by default)
2. Percentage arithmetic on Decimals
3. Signed ledger amounts (credit = +, debit = -)
4. Rounding at calculation boundary only
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union, Iterable
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

Numeric = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be used in a financial calculation"""
    pass


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise FinancialPrecisionError(f"Cannot convert '{value}' to Decimal")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def quantize_pattern(decimals: int) -> Decimal:
    """Quantize exponent for a currency precision, e.g. 2 -> 0.01, 0 -> 1"""
    return Decimal(1).scaleb(-decimals)


def round_financial(value: Numeric, decimals: int = DECIMAL_PLACES) -> Decimal:
    """
    Round a value to the given decimal places using ROUND_HALF_UP.
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    pattern = QUANTIZE_PATTERN if decimals == DECIMAL_PLACES else quantize_pattern(decimals)
    return decimal_value.quantize(pattern, rounding=ROUND_HALF_UP)


def to_float(value: Numeric, decimals: int = DECIMAL_PLACES) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to the currency precision first.
    """
    return float(round_financial(value, decimals))


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 10) = 100
    """
    return to_decimal(amount) * to_decimal(percentage) / Decimal('100')


def decimal_places(value: Numeric) -> int:
    """Number of digits after the decimal point, ignoring trailing zeros"""
    exponent = to_decimal(value).normalize().as_tuple().exponent
    if not isinstance(exponent, int):
        # NaN / Infinity
        raise FinancialPrecisionError(f"Non-finite value: {value}")
    return max(0, -exponent)


def signed_amount(entry_type: str, amount: Numeric) -> Decimal:
    """Credit entries count positive, debit entries negative"""
    value = to_decimal(amount)
    if entry_type == "credit":
        return value
    if entry_type == "debit":
        return -value
    raise FinancialPrecisionError(f"Unknown ledger entry type: {entry_type}")


def signed_total(entries: Iterable[dict]) -> Decimal:
    """Signed sum over ledger entry documents (type + amount keys)"""
    total = Decimal('0')
    for entry in entries:
        total += signed_amount(entry["type"], entry["amount"])
    return total
