"""
Typed value coercion.

Field values and constants arrive as whatever the extractor or catalog
produced (strings, floats, Decimals, dates). The evaluator only works with
Decimal, bool, str and date, so everything is coerced here according to the
declared data type.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Union

from backend.exceptions import TypeMismatchError
from backend.formula_engine.models import DataType
from backend.services.numeric_parser import NumericParser, get_numeric_parser

Value = Union[Decimal, bool, str, date]

DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%d %b %Y", "%d %B %Y", "%b %d, %Y", "%B %d, %Y")
TRUE_WORDS = {"true", "yes", "y", "1"}
FALSE_WORDS = {"false", "no", "n", "0"}


def coerce_value(
    raw: Any,
    data_type: DataType = DataType.NUMBER,
    parser: Optional[NumericParser] = None,
) -> Value:
    """
    Convert a raw value to the evaluator's representation of data_type.

    Raises:
        TypeMismatchError: The value cannot be read as the declared type.
    """
    if isinstance(raw, (Decimal, bool, date)) and _matches(raw, data_type):
        return raw

    if data_type.is_numeric:
        return coerce_number(raw, data_type, parser)
    if data_type == DataType.BOOLEAN:
        return coerce_boolean(raw)
    if data_type == DataType.DATE:
        return coerce_date(raw)
    if isinstance(raw, date):
        return raw.isoformat()
    return "" if raw is None else str(raw)


def coerce_number(
    raw: Any,
    data_type: DataType = DataType.NUMBER,
    parser: Optional[NumericParser] = None,
) -> Decimal:
    if isinstance(raw, bool):
        raise TypeMismatchError(f"Expected a number but got boolean {raw}")
    parsed = (parser or get_numeric_parser()).parse_value(raw)
    if not parsed.is_valid:
        raise TypeMismatchError(f"'{raw}' is not a number", details={"value": str(raw)})
    if data_type == DataType.PERCENTAGE:
        return parsed.as_fraction()
    return parsed.value


def coerce_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float, Decimal)):
        return raw != 0
    text = str(raw).strip().lower()
    if text in TRUE_WORDS:
        return True
    if text in FALSE_WORDS:
        return False
    raise TypeMismatchError(f"'{raw}' is not a boolean", details={"value": str(raw)})


def coerce_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise TypeMismatchError(f"'{raw}' is not a date", details={"value": text})


def infer_literal(raw: Any) -> Value:
    """Coerce a constant whose type was not declared: number, then boolean, else text."""
    if isinstance(raw, (Decimal, bool, date)):
        return raw
    if isinstance(raw, (int, float)):
        return Decimal(str(raw))
    text = "" if raw is None else str(raw).strip()
    if text.upper() in ("TRUE", "FALSE"):
        return text.upper() == "TRUE"
    parsed = get_numeric_parser().parse(text)
    if parsed.is_valid:
        return parsed.as_fraction()
    return text


def type_name(value: Any) -> str:
    """Data type name of an evaluator value, for error messages."""
    if isinstance(value, bool):
        return DataType.BOOLEAN.value
    if isinstance(value, Decimal):
        return DataType.NUMBER.value
    if isinstance(value, date):
        return DataType.DATE.value
    return DataType.TEXT.value


def _matches(value: Any, data_type: DataType) -> bool:
    if isinstance(value, bool):
        return data_type == DataType.BOOLEAN
    if isinstance(value, Decimal):
        return data_type in (DataType.NUMBER, DataType.CURRENCY)
    return data_type == DataType.DATE and not isinstance(value, datetime)
