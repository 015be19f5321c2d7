"""
Currency Precision Module

Fixed-point money helpers. Every stored monetary value is a Decimal
quantized to the currency's minor unit with ROUND_HALF_UP. NEVER uses
float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union
import re

from .exceptions import InvalidInputError

# Set global decimal context for financial precision
getcontext().prec = 28

Numeric = Union[Decimal, int, str, float]


class Currency(Enum):
    """ISO 4217 currency codes with minor-unit precision"""
    INR = ("INR", 2)  # Indian Rupee, 2 decimal places
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)  # Japanese Yen, no minor unit

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        return Decimal('0.1') ** self.precision


ZERO = Decimal('0.00')
CENT = Decimal('0.01')


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert an incoming numeric value to Decimal without going through float

    Args:
        value: Decimal, int, numeric string or float

    Returns:
        Decimal value

    Raises:
        InvalidInputError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"Cannot convert {value!r} to Decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        # Strip currency symbols, spaces and thousands separators
        clean_value = re.sub(r'[^\d.\-+eE]', '', value.strip())
        if not clean_value:
            raise InvalidInputError(f"Cannot convert '{value}' to Decimal")
        try:
            result = Decimal(clean_value)
        except InvalidOperation:
            raise InvalidInputError(f"Cannot convert '{value}' to Decimal")
    else:
        raise InvalidInputError(f"Cannot convert {type(value).__name__} to Decimal")

    if not result.is_finite():
        raise InvalidInputError(f"Amount must be finite, got {value!r}")
    return result


def quantize(value: Numeric, currency: Currency = Currency.INR) -> Decimal:
    """Round to the currency's minor unit using round-half-up"""
    return to_decimal(value).quantize(currency.minor_unit, rounding=ROUND_HALF_UP)


def round2(value: Numeric) -> Decimal:
    """Round to two decimal places (round-half-up)"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    """Wire format: plain decimal string with exactly two fractional digits"""
    return f"{round2(value):.2f}"


def format_money(value: Decimal, currency: Currency = Currency.INR) -> str:
    """Format for display"""
    amount = quantize(value, currency)
    if currency.precision == 0:
        return f"{currency.code} {amount:,.0f}"
    return f"{currency.code} {amount:,.{currency.precision}f}"
