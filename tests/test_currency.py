"""
Test suite for currency module

Covers Decimal handling, minor-unit rounding and exchange rate resolution
under both conversion policies.
"""

import pytest
from decimal import Decimal

from banking_ledger.currency import (
    Currency, Money, CurrencyConverter, RateQuote, to_decimal, quantize,
    FAIL_CLOSED_POLICY, FALLBACK_POLICY
)
from banking_ledger.errors import ConversionUnavailableError, ValidationError


class TestDecimalHandling:
    """Test conversion and rounding of monetary values"""

    def test_to_decimal_accepts_strings_and_ints(self):
        assert to_decimal("100.50") == Decimal("100.50")
        assert to_decimal(7) == Decimal("7")
        assert to_decimal(Decimal("0.01")) == Decimal("0.01")

    def test_to_decimal_rejects_floats(self):
        """Floats never enter monetary arithmetic"""
        with pytest.raises(ValidationError):
            to_decimal(0.1)
        with pytest.raises(ValidationError):
            to_decimal(True)

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValidationError):
            to_decimal("ten dollars")
        with pytest.raises(ValidationError):
            to_decimal("NaN")

    def test_quantize_rounds_half_up(self):
        assert quantize(Decimal("1.005"), Currency.USD) == Decimal("1.01")
        assert quantize(Decimal("1.004"), Currency.USD) == Decimal("1.00")
        assert quantize(Decimal("150.5"), Currency.JPY) == Decimal("151")

    def test_quantize_beyond_context_precision(self):
        with pytest.raises(ValidationError):
            quantize(Decimal("1E+27"), Currency.USD)
        assert quantize(Decimal("1E+27"), Currency.JPY) == Decimal("1E+27")

    def test_currency_from_code(self):
        assert Currency.from_code("usd") == Currency.USD
        assert Currency.from_code(Currency.EUR) == Currency.EUR
        with pytest.raises(ValidationError):
            Currency.from_code("XYZ")
        with pytest.raises(ValidationError):
            Currency.from_code("US")


class TestMoney:
    """Test Money arithmetic"""

    def test_money_is_quantized(self):
        money = Money(Decimal("10.129"), Currency.USD)
        assert money.amount == Decimal("10.13")

    def test_money_arithmetic(self):
        a = Money(Decimal("10.00"), Currency.USD)
        b = Money(Decimal("2.50"), Currency.USD)
        assert (a + b).amount == Decimal("12.50")
        assert (a - b).amount == Decimal("7.50")
        assert (b * Decimal("3")).amount == Decimal("7.50")
        assert (-b).amount == Decimal("-2.50")
        assert b < a

    def test_money_currency_mismatch(self):
        with pytest.raises(ValueError):
            Money(Decimal("1"), Currency.USD) + Money(Decimal("1"), Currency.EUR)

    def test_to_string(self):
        assert Money(Decimal("1234.5"), Currency.USD).to_string() == "USD 1,234.50"
        assert Money(Decimal("1234"), Currency.JPY).to_string() == "JPY 1,234"


class TestCurrencyConverter:
    """Test exchange rate resolution"""

    def setup_method(self):
        self.converter = CurrencyConverter()

    def test_same_currency_is_identity(self):
        quote = self.converter.quote(Currency.USD, Currency.USD)
        assert quote.rate == Decimal("1")
        assert quote.is_fallback is False

    def test_configured_rate(self):
        quote = self.converter.quote("USD", "EUR")
        assert quote.rate == Decimal("0.85")
        assert quote.is_fallback is False

    def test_directions_are_independent(self):
        assert self.converter.rate("EUR", "USD") == Decimal("1.18")

    def test_unknown_pair_falls_back_and_is_flagged(self):
        """A fallback rate of 1 must be distinguishable from a real 1:1 pair"""
        quote = self.converter.quote("USD", "JPY")
        assert isinstance(quote, RateQuote)
        assert quote.rate == Decimal("1")
        assert quote.is_fallback is True

    def test_fail_closed_policy_raises(self):
        converter = CurrencyConverter(policy=FAIL_CLOSED_POLICY)
        with pytest.raises(ConversionUnavailableError):
            converter.quote("USD", "JPY")
        assert converter.quote("USD", "EUR").rate == Decimal("0.85")

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            CurrencyConverter(policy="guess")

    def test_set_rate_with_reverse(self):
        converter = CurrencyConverter(rates={}, policy=FALLBACK_POLICY)
        converter.set_rate("USD", "CHF", "0.80", include_reverse=True)
        assert converter.rate("USD", "CHF") == Decimal("0.80")
        assert converter.rate("CHF", "USD") == Decimal("1.25")
        assert converter.has_rate(Currency.CHF, Currency.USD)

    def test_set_rate_rejects_non_positive(self):
        with pytest.raises(ValidationError):
            self.converter.set_rate("USD", "EUR", "0")

    def test_convert(self):
        converted = self.converter.convert(Money(Decimal("100.00"), Currency.USD), "EUR")
        assert converted == Money(Decimal("85.00"), Currency.EUR)
