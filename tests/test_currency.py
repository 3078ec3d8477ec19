"""
Test suite for money handling helpers

All amounts are Decimal; rounding is half-up to paise.
"""

import pytest
from decimal import Decimal

from gold_lending.currency import (
    ZERO, to_decimal, round_money, round_rate, optional_money,
    decimal_from_string, format_inr
)


class TestToDecimal:
    """Test conversion of inputs to Decimal"""

    def test_decimal_passes_through(self):
        value = Decimal('123.456')
        assert to_decimal(value) is value

    def test_float_uses_its_shortest_repr(self):
        assert to_decimal(0.1) == Decimal('0.1')

    def test_int_and_string(self):
        assert to_decimal(100) == Decimal('100')
        assert to_decimal("2500.50") == Decimal('2500.50')

    def test_rejects_none_and_bool(self):
        with pytest.raises(ValueError):
            to_decimal(None)
        with pytest.raises(ValueError):
            to_decimal(True)

    def test_rejects_other_types(self):
        with pytest.raises(ValueError, match="Cannot convert"):
            to_decimal([1, 2])


class TestRounding:
    """Test rounding to currency precision"""

    def test_round_money_half_up(self):
        assert round_money("10.005") == Decimal('10.01')
        assert round_money("10.004") == Decimal('10.00')
        assert round_money(Decimal('-2.345')) == Decimal('-2.35')

    def test_round_rate(self):
        assert round_rate(Decimal('79.995')) == Decimal('80.00')

    def test_optional_money(self):
        assert optional_money(None) is None
        assert optional_money("1.239") == Decimal('1.24')

    def test_zero_has_two_places(self):
        assert str(ZERO) == "0.00"


class TestDecimalFromString:
    """Test parsing of user-entered amounts"""

    def test_indian_grouping_and_symbol(self):
        assert decimal_from_string("₹1,00,000.50") == Decimal('100000.50')

    def test_western_grouping(self):
        assert decimal_from_string(" 1,234,567.89 ") == Decimal('1234567.89')

    def test_negative(self):
        assert decimal_from_string("-250") == Decimal('-250')

    def test_empty_string(self):
        with pytest.raises(ValueError, match="non-empty"):
            decimal_from_string("")

    def test_garbage(self):
        with pytest.raises(ValueError, match="Cannot convert"):
            decimal_from_string("abc")


class TestFormatInr:
    """Test Indian digit grouping"""

    def test_lakh_grouping(self):
        assert format_inr(Decimal('123456.78')) == "₹1,23,456.78"

    def test_crore_grouping(self):
        assert format_inr(Decimal('12345678')) == "₹1,23,45,678.00"

    def test_small_amount(self):
        assert format_inr(100) == "₹100.00"

    def test_negative_amount(self):
        assert format_inr(Decimal('-1234567')) == "-₹12,34,567.00"
