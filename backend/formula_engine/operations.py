"""
Operation registry.

Static table of the operators a formula canvas can use: id, display label,
required input count and the rule for rendering the operator into the
expression grammar. The registry is immutable and passed into the compiler.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import structlog

logger = structlog.get_logger(__name__)

UNKNOWN_OPERATION_TOKEN = "UNKNOWN_OP"
DEFAULT_ARITY = 2


class OperationCategory(str, Enum):
    """Grouping used by the canvas toolbar."""
    MATH = "math"
    COMPARISON = "comparison"
    LOGICAL = "logical"
    FUNCTION = "function"


class FormatStyle(str, Enum):
    """How an operator is rendered into an expression."""
    INFIX_CHAIN = "infix_chain"  # (a + b [+ c ...])
    INFIX = "infix"              # (a > b)
    FUNCTION = "function"        # NAME(a, b) with fixed arity
    VARIADIC = "variadic"        # NAME(a, b, ...)


@dataclass(frozen=True)
class OperationSpec:
    """One registry entry."""
    id: str
    label: str
    arity: int
    token: str
    style: FormatStyle
    category: OperationCategory
    symbol: str = ""
    description: str = ""

    def format(self, args: Sequence[str]) -> str:
        """Render the operator over already-compiled argument expressions."""
        if self.style == FormatStyle.INFIX_CHAIN:
            return "(" + f" {self.token} ".join(args) + ")"
        if self.style == FormatStyle.INFIX:
            return f"({args[0]} {self.token} {args[1]})"
        if self.style == FormatStyle.FUNCTION:
            return f"{self.token}({', '.join(args[:self.arity])})"
        return f"{self.token}({', '.join(args)})"

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "label": self.label,
            "inputs": self.arity,
            "token": self.token,
            "style": self.style.value,
            "category": self.category.value,
            "symbol": self.symbol,
            "description": self.description,
        }


DEFAULT_OPERATIONS = (
    # Basic math
    OperationSpec("add", "Add", 2, "+", FormatStyle.INFIX_CHAIN, OperationCategory.MATH, "+",
                  "Add two numbers together"),
    OperationSpec("subtract", "Subtract", 2, "-", FormatStyle.INFIX_CHAIN, OperationCategory.MATH, "−",
                  "Subtract second number from first"),
    OperationSpec("multiply", "Multiply", 2, "*", FormatStyle.INFIX_CHAIN, OperationCategory.MATH, "×",
                  "Multiply two numbers"),
    OperationSpec("divide", "Divide", 2, "/", FormatStyle.INFIX_CHAIN, OperationCategory.MATH, "÷",
                  "Divide first number by second"),
    OperationSpec("power", "POWER", 2, "POWER", FormatStyle.FUNCTION, OperationCategory.MATH, "^",
                  "Raise base to exponent"),
    OperationSpec("mod", "MOD", 2, "MOD", FormatStyle.FUNCTION, OperationCategory.MATH, "%",
                  "Remainder of truncated division"),
    OperationSpec("sqrt", "SQRT", 1, "SQRT", FormatStyle.FUNCTION, OperationCategory.MATH, "√",
                  "Square root (input must be >= 0)"),
    # Comparisons
    OperationSpec("greater", "Greater Than", 2, ">", FormatStyle.INFIX, OperationCategory.COMPARISON, ">"),
    OperationSpec("less", "Less Than", 2, "<", FormatStyle.INFIX, OperationCategory.COMPARISON, "<"),
    OperationSpec("greaterEqual", "Greater Equal", 2, ">=", FormatStyle.INFIX, OperationCategory.COMPARISON, "≥"),
    OperationSpec("lessEqual", "Less Equal", 2, "<=", FormatStyle.INFIX, OperationCategory.COMPARISON, "≤"),
    OperationSpec("equals", "Equals", 2, "=", FormatStyle.INFIX, OperationCategory.COMPARISON, "="),
    OperationSpec("notEqual", "Not Equal", 2, "<>", FormatStyle.INFIX, OperationCategory.COMPARISON, "≠"),
    # Logical
    OperationSpec("and", "AND", 2, "AND", FormatStyle.INFIX, OperationCategory.LOGICAL, "AND",
                  "True when both conditions are true"),
    OperationSpec("or", "OR", 2, "OR", FormatStyle.INFIX, OperationCategory.LOGICAL, "OR",
                  "True when either condition is true"),
    OperationSpec("not", "NOT", 1, "NOT", FormatStyle.FUNCTION, OperationCategory.LOGICAL, "NOT",
                  "Invert a condition"),
    # Functions
    OperationSpec("abs", "ABS", 1, "ABS", FormatStyle.FUNCTION, OperationCategory.FUNCTION, "|x|",
                  "Absolute value"),
    OperationSpec("round", "ROUND", 1, "ROUND", FormatStyle.FUNCTION, OperationCategory.FUNCTION, "RND",
                  "Round to the nearest whole number"),
    OperationSpec("if", "IF", 3, "IF", FormatStyle.FUNCTION, OperationCategory.LOGICAL, "IF",
                  "Condition, value if true, value if false"),
    OperationSpec("min", "MIN", 2, "MIN", FormatStyle.VARIADIC, OperationCategory.FUNCTION, "MIN",
                  "Smallest connected value"),
    OperationSpec("max", "MAX", 2, "MAX", FormatStyle.VARIADIC, OperationCategory.FUNCTION, "MAX",
                  "Largest connected value"),
)


class OperationRegistry:
    """
    Read-only lookup of supported operations.

    Unknown ids never raise: they report the default arity, an upper-cased
    label and render as a visibly wrong UNKNOWN_OP(...) call.
    """

    def __init__(self, operations: Iterable[OperationSpec] = DEFAULT_OPERATIONS):
        table: Dict[str, OperationSpec] = {}
        for spec in operations:
            if spec.id in table:
                raise ValueError(f"Duplicate operation id: {spec.id}")
            table[spec.id] = spec
        self._operations: Mapping[str, OperationSpec] = MappingProxyType(table)

    def __contains__(self, operation_id: str) -> bool:
        return operation_id in self._operations

    def __len__(self) -> int:
        return len(self._operations)

    def get(self, operation_id: str) -> Optional[OperationSpec]:
        return self._operations.get(operation_id)

    def arity(self, operation_id: str) -> int:
        spec = self.get(operation_id)
        return spec.arity if spec else DEFAULT_ARITY

    def label(self, operation_id: str) -> str:
        spec = self.get(operation_id)
        return spec.label if spec else operation_id.upper()

    def format(self, operation_id: str, args: Sequence[str]) -> str:
        spec = self.get(operation_id)
        if spec is None:
            logger.warning("Unknown operation rendered as placeholder", operation_id=operation_id)
            return f"{UNKNOWN_OPERATION_TOKEN}({', '.join(args)})"
        return spec.format(args)

    def operations(self) -> List[OperationSpec]:
        return list(self._operations.values())


# Singleton instance
_registry_instance: Optional[OperationRegistry] = None


def get_operation_registry() -> OperationRegistry:
    """Get singleton default OperationRegistry instance."""
    global _registry_instance
    if _registry_instance is None:
        _registry_instance = OperationRegistry()
    return _registry_instance
