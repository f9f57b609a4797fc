"""
Numeric parser service for extracted field values.

Turns the text extracted from a document field into a Decimal:
- Currency: $1,234.56, €1.234,56, SAR 1,000
- Negative: (123), -123
- Units: 123K, 1.2M, 5B
- Percentages: 12.5%
"""
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ParsedNumber:
    """Result of parsing a numeric string."""

    value: Optional[Decimal]
    raw_value: str
    confidence: float
    is_negative: bool = False
    unit_multiplier: int = 1
    currency: Optional[str] = None
    is_percentage: bool = False

    @property
    def is_valid(self) -> bool:
        return self.value is not None

    def as_fraction(self) -> Optional[Decimal]:
        """Value with percentages converted to a fraction (12.5% -> 0.125)."""
        if self.value is None or not self.is_percentage:
            return self.value
        return self.value / 100


class NumericParser:
    """
    Parser for numeric field values.

    Handles the number formats extracted fields come in:
    - Standard numbers: 1234, 1,234.56
    - Currency symbols and codes: $, €, £, ¥, ₹, SAR, USD ...
    - Negative notation: parentheses (123) or minus sign -123
    - Unit suffixes: K (thousands), M (millions), B (billions)
    - Percentages: 12.5%
    """

    # Longest first so "USD" wins over "$" style prefixes sharing characters
    CURRENCY_SYMBOLS = ("USD", "EUR", "GBP", "SAR", "AED", "CAD", "AUD", "CHF", "$", "€", "£", "¥", "₹")

    UNIT_MULTIPLIERS = {
        "K": 1_000,
        "M": 1_000_000,
        "MM": 1_000_000,
        "B": 1_000_000_000,
        "BN": 1_000_000_000,
        "THOUSAND": 1_000,
        "MILLION": 1_000_000,
        "BILLION": 1_000_000_000,
    }

    PARENTHESES_PATTERN = re.compile(r"^\s*\(([^)]+)\)\s*$")
    UNIT_PATTERN = re.compile(r"(?<=[\d\s])(MM|BN|[KMB]|thousand|million|billion)s?\s*$", re.IGNORECASE)
    PERCENTAGE_PATTERN = re.compile(r"%\s*$")

    def parse(self, value_str: str) -> ParsedNumber:
        """
        Parse a string value into a numeric result.

        Args:
            value_str: The string to parse.

        Returns:
            ParsedNumber with parsed value and metadata.
        """
        if not value_str or not value_str.strip():
            return ParsedNumber(value=None, raw_value=value_str or "", confidence=0.0)

        original = value_str
        value_str = value_str.strip()

        is_negative = False
        paren_match = self.PARENTHESES_PATTERN.match(value_str)
        if paren_match:
            value_str = paren_match.group(1).strip()
            is_negative = True

        if value_str.startswith("-"):
            is_negative = True
            value_str = value_str[1:].strip()
        elif value_str.startswith("+"):
            value_str = value_str[1:].strip()

        currency = None
        for symbol in self.CURRENCY_SYMBOLS:
            if value_str.upper().startswith(symbol):
                currency = symbol
                value_str = value_str[len(symbol):].strip()
                break

        # Sign may follow the currency symbol: $-100
        if value_str.startswith("-"):
            is_negative = True
            value_str = value_str[1:].strip()

        is_percentage = False
        if self.PERCENTAGE_PATTERN.search(value_str):
            is_percentage = True
            value_str = self.PERCENTAGE_PATTERN.sub("", value_str).strip()

        unit_multiplier = 1
        unit_match = self.UNIT_PATTERN.search(value_str)
        if unit_match:
            unit_multiplier = self.UNIT_MULTIPLIERS.get(unit_match.group(1).upper(), 1)
            value_str = value_str[:unit_match.start()].strip()

        parsed_value, confidence = self._parse_number(value_str)

        if parsed_value is not None:
            parsed_value = parsed_value * unit_multiplier
            if is_negative:
                parsed_value = -parsed_value

        return ParsedNumber(
            value=parsed_value,
            raw_value=original,
            confidence=confidence,
            is_negative=is_negative,
            unit_multiplier=unit_multiplier,
            currency=currency,
            is_percentage=is_percentage,
        )

    def parse_value(self, value: Any) -> ParsedNumber:
        """Parse an already-typed value or a string."""
        if isinstance(value, bool):
            return ParsedNumber(value=None, raw_value=str(value), confidence=0.0)
        if isinstance(value, Decimal):
            return ParsedNumber(value=value, raw_value=str(value), confidence=1.0, is_negative=value < 0)
        if isinstance(value, (int, float)):
            number = Decimal(str(value))
            return ParsedNumber(value=number, raw_value=str(value), confidence=1.0, is_negative=number < 0)
        if value is None:
            return ParsedNumber(value=None, raw_value="", confidence=0.0)
        return self.parse(str(value))

    def _parse_number(self, value_str: str) -> Tuple[Optional[Decimal], float]:
        """
        Parse a cleaned numeric string into a Decimal.

        Returns:
            Tuple of (parsed Decimal or None, confidence score).
        """
        if not value_str:
            return None, 0.0

        value_str = value_str.replace(" ", "")
        comma_count = value_str.count(",")
        period_count = value_str.count(".")

        try:
            if comma_count == 0 and period_count <= 1:
                return Decimal(value_str), 1.0

            if comma_count >= 1 and period_count == 0:
                # 1,234,567 (thousands) or 1,5 (decimal comma)
                if self._is_thousand_separator(value_str, ","):
                    return Decimal(value_str.replace(",", "")), 0.95
                return Decimal(value_str.replace(",", ".")), 0.85

            last_comma_pos = value_str.rfind(",")
            last_period_pos = value_str.rfind(".")
            if comma_count >= 1 and period_count >= 1:
                if last_period_pos > last_comma_pos:
                    return Decimal(value_str.replace(",", "")), 0.95
                return Decimal(value_str.replace(".", "").replace(",", ".")), 0.9

            # Several periods and no comma: 1.234.567
            if self._is_thousand_separator(value_str, "."):
                return Decimal(value_str.replace(".", "")), 0.8
            return None, 0.0

        except (InvalidOperation, ValueError) as e:
            logger.warning("Failed to parse number", value=value_str, error=str(e))
            return None, 0.0

    def _is_thousand_separator(self, value_str: str, separator: str) -> bool:
        """True when every group after the first has exactly three digits."""
        parts = value_str.split(separator)
        if len(parts) < 2:
            return False
        return all(len(part) == 3 and part.isdigit() for part in parts[1:])


# Singleton instance
_parser_instance: Optional[NumericParser] = None


def get_numeric_parser() -> NumericParser:
    """Get singleton NumericParser instance."""
    global _parser_instance
    if _parser_instance is None:
        _parser_instance = NumericParser()
    return _parser_instance
