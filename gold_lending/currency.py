"""
Money Handling Module

Decimal helpers for the single operating currency (INR). Amounts are rounded
to minor-unit precision at computation boundaries: EMI, LTV, penalties and
balance updates. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Optional
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CURRENCY_CODE = "INR"
CURRENCY_PRECISION = 2

ZERO = Decimal('0.00')
CENT = Decimal('0.01')
HUNDRED = Decimal('100')


def to_decimal(value: Any) -> Decimal:
    """
    Convert a number or numeric string to Decimal

    Floats go through str() so that 0.1 becomes Decimal('0.1'), not its
    binary expansion.

    Raises:
        ValueError: If the value cannot be interpreted as a number
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: Any) -> Decimal:
    """Round an amount to currency precision (2 dp, half-up)"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_rate(value: Any) -> Decimal:
    """Round a percentage (LTV, interest) to 2 dp"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def optional_money(value: Any) -> Optional[Decimal]:
    """round_money that passes None through"""
    if value is None:
        return None
    return round_money(value)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Accepts rupee symbols, whitespace and Indian/Western digit grouping
    ("₹1,00,000.50", "100000.50").

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    # Commas are always digit grouping for INR
    clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def format_inr(amount: Any) -> str:
    """
    Format an amount with Indian digit grouping, e.g. ₹1,23,456.78
    """
    amount = round_money(amount)
    sign = "-" if amount < 0 else ""
    whole, _, fraction = f"{abs(amount):.2f}".partition('.')

    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ",".join(groups + [tail])

    return f"{sign}₹{whole}.{fraction}"
