"""
Unit tests for NumericParser service.
"""
from decimal import Decimal

import pytest

from backend.services.numeric_parser import NumericParser, ParsedNumber, get_numeric_parser


class TestNumericParser:
    """Tests for parsing extracted field text."""

    @pytest.fixture
    def parser(self) -> NumericParser:
        """Create parser instance."""
        return NumericParser()

    # Plain numbers
    def test_parse_integer(self, parser: NumericParser):
        """Test parsing simple integer."""
        result = parser.parse("1234")
        assert result.value == Decimal("1234")
        assert result.confidence == 1.0

    def test_parse_thousand_separators(self, parser: NumericParser):
        """Test US grouping with and without decimals."""
        assert parser.parse("1,234,567").value == Decimal("1234567")
        assert parser.parse("1,234,567.89").value == Decimal("1234567.89")
        assert parser.parse("1.234.567").value == Decimal("1234567")

    def test_parse_decimal_comma(self, parser: NumericParser):
        """Test European decimal comma formats."""
        assert parser.parse("1234,56").value == Decimal("1234.56")
        assert parser.parse("1.234,56").value == Decimal("1234.56")

    # Currency
    @pytest.mark.parametrize("text,currency,value", [
        ("$1,234.56", "$", "1234.56"),
        ("€1234", "€", "1234"),
        ("SAR 1,000", "SAR", "1000"),
        ("USD 99.95", "USD", "99.95"),
    ])
    def test_parse_currency(self, parser: NumericParser, text, currency, value):
        """Test currency symbols and codes are stripped and recorded."""
        result = parser.parse(text)
        assert result.value == Decimal(value)
        assert result.currency == currency

    # Negatives
    def test_parse_accounting_negative(self, parser: NumericParser):
        """Test parentheses mean negative."""
        result = parser.parse("($1,234.56)")
        assert result.value == Decimal("-1234.56")
        assert result.is_negative is True
        assert result.currency == "$"

    def test_parse_sign_after_currency(self, parser: NumericParser):
        """Test a minus sign between symbol and digits."""
        assert parser.parse("$-100").value == Decimal("-100")
        assert parser.parse("-1234.56").is_negative is True
        assert parser.parse("+1234").is_negative is False

    # Units
    @pytest.mark.parametrize("text,value,multiplier", [
        ("123K", "123000", 1_000),
        ("1.5M", "1500000", 1_000_000),
        ("100MM", "100000000", 1_000_000),
        ("2.5B", "2500000000", 1_000_000_000),
        ("5 million", "5000000", 1_000_000),
    ])
    def test_parse_units(self, parser: NumericParser, text, value, multiplier):
        """Test unit suffixes scale the value."""
        result = parser.parse(text)
        assert result.value == Decimal(value)
        assert result.unit_multiplier == multiplier

    def test_parse_currency_negative_unit(self, parser: NumericParser):
        """Test currency, parentheses and units together."""
        assert parser.parse("($1.5M)").value == Decimal("-1500000")

    # Percentages
    def test_parse_percentage(self, parser: NumericParser):
        """Test percentages keep the written value and convert on request."""
        result = parser.parse("12.5%")
        assert result.value == Decimal("12.5")
        assert result.is_percentage is True
        assert result.as_fraction() == Decimal("0.125")

    # Unreadable input
    @pytest.mark.parametrize("text", ["", "   ", "abc", "12.34.5"])
    def test_parse_invalid(self, parser: NumericParser, text):
        """Test text that is not a number."""
        result = parser.parse(text)
        assert result.value is None
        assert result.is_valid is False
        assert result.confidence == 0.0

    # Typed values
    def test_parse_value(self, parser: NumericParser):
        """Test values that are already typed."""
        assert parser.parse_value(Decimal("-3")).is_negative is True
        assert parser.parse_value(1.5).value == Decimal("1.5")
        assert parser.parse_value(42).value == Decimal("42")
        assert parser.parse_value(" $10 ").value == Decimal("10")
        assert parser.parse_value(None).is_valid is False
        assert parser.parse_value(True).is_valid is False

    def test_singleton(self):
        """Test the shared parser instance."""
        assert get_numeric_parser() is get_numeric_parser()


class TestParsedNumber:
    """Tests for ParsedNumber dataclass."""

    def test_parsed_number_defaults(self):
        """Test ParsedNumber default values."""
        result = ParsedNumber(value=Decimal("100"), raw_value="100", confidence=1.0)
        assert result.is_negative is False
        assert result.unit_multiplier == 1
        assert result.currency is None
        assert result.is_percentage is False
        assert result.as_fraction() == Decimal("100")

    def test_invalid_fraction(self):
        """Test an unparsed number has no fraction."""
        assert ParsedNumber(value=None, raw_value="x", confidence=0.0).as_fraction() is None
