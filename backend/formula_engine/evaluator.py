"""
Expression evaluator.

Evaluates a query's compiled outputs for one document, in execution order.
Each expression is parsed into an AST and walked; values are Decimal, bool,
str or date. A failing output never stops the others: it is recorded as
failed, and outputs that reference it fail by propagation without being
evaluated.
"""

from datetime import date, timedelta
from decimal import (
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_EVEN,
    ROUND_HALF_UP,
    Decimal,
    DecimalException,
    InvalidOperation,
)
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import structlog

from backend.config import Settings, get_settings
from backend.exceptions import (
    ArithmeticFault,
    EvaluationError,
    ExpressionTooDeepError,
    FormulaEngineError,
    InvalidExpressionError,
    MissingFieldValueError,
    PropagatedFailure,
    TypeMismatchError,
    UnknownReferenceError,
)
from backend.formula_engine.expression import (
    BinaryOp,
    BooleanLiteral,
    ConstantRef,
    Expr,
    FunctionCall,
    InputRef,
    NameRef,
    NumberLiteral,
    OutputRef,
    Reference,
    UnaryOp,
    iter_references,
    parse_expression,
    render,
)
from backend.formula_engine.models import (
    CompiledOutput,
    ConstantDefinition,
    DataType,
    EvaluationResult,
    FieldValue,
    OutputResult,
)
from backend.formula_engine.values import Value, coerce_value, infer_literal, type_name
from backend.services.numeric_parser import NumericParser, get_numeric_parser

logger = structlog.get_logger(__name__)

ROUNDING_MODES = {
    "half_even": ROUND_HALF_EVEN,
    "half_up": ROUND_HALF_UP,
}

# name -> (min args, max args); None means variadic
FUNCTION_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    "POWER": (2, 2),
    "MOD": (2, 2),
    "SQRT": (1, 1),
    "ABS": (1, 1),
    "ROUND": (1, 2),
    "FLOOR": (1, 1),
    "CEILING": (1, 1),
    "NOT": (1, 1),
    "IF": (3, 3),
    "MIN": (1, None),
    "MAX": (1, None),
    "SUM": (1, None),
    "AVG": (1, None),
}


class _Scope:
    """Values visible to one output's evaluation, plus what it consumed."""

    def __init__(self, evaluator: "ExpressionEvaluator", state: "_DocumentState"):
        self.evaluator = evaluator
        self.state = state
        self.confidences: List[float] = []
        self.substitutions: Dict[Reference, str] = {}

    @property
    def confidence(self) -> float:
        return min(self.confidences) if self.confidences else 1.0

    def resolve(self, ref: Reference) -> Value:
        if isinstance(ref, InputRef):
            value, confidence = self.state.field(ref)
        elif isinstance(ref, OutputRef):
            value, confidence = self.state.output(ref.name)
        elif isinstance(ref, ConstantRef):
            value, confidence = self.state.constant(ref.name), 1.0
        elif ref.name in self.state.output_names:
            value, confidence = self.state.output(ref.name)
        else:
            value, confidence = self.state.constant(ref.name), 1.0

        self.confidences.append(confidence)
        self.substitutions[ref] = display(value)
        return value


class _DocumentState:
    """Inputs and write-once results for one document."""

    def __init__(
        self,
        evaluator: "ExpressionEvaluator",
        outputs: Sequence[CompiledOutput],
        field_values: Mapping[str, Any],
        constants: Mapping[str, Any],
        rejected: Mapping[str, FormulaEngineError],
    ):
        self.evaluator = evaluator
        self.field_values = field_values
        self.constants = constants
        self.output_names: Set[str] = {o.name for o in outputs}
        # One output per name; a valid definition wins over a duplicate
        self.definitions: Dict[str, CompiledOutput] = {}
        for output in outputs:
            current = self.definitions.get(output.name)
            if current is None or (output.is_valid and not current.is_valid):
                self.definitions[output.name] = output
        self.invalid_names: Set[str] = {n for n, o in self.definitions.items() if not o.is_valid}
        self.rejected = rejected
        self.results: Dict[str, OutputResult] = {}
        self._constant_cache: Dict[str, Value] = {}

    def field(self, ref: InputRef) -> Tuple[Value, float]:
        entry = self.field_values.get(ref.name)
        if entry is None and ref.field_id:
            entry = self.field_values.get(ref.field_id)
        if isinstance(entry, FieldValue):
            if entry.value is None or entry.value == "":
                raise MissingFieldValueError(ref.name)
            return coerce_value(entry.value, entry.data_type, self.evaluator.numeric_parser), entry.confidence
        if entry is None or entry == "":
            raise MissingFieldValueError(ref.name)
        return infer_literal(entry), 1.0

    def output(self, name: str) -> Tuple[Value, float]:
        result = self.results.get(name)
        if result is None:
            if name in self.output_names:
                raise EvaluationError(
                    f"Output '{name}' has not been evaluated yet",
                    details={"dependency": name},
                )
            raise UnknownReferenceError(name, kind="output")
        if not result.success:
            raise PropagatedFailure(name)
        return result.value, result.confidence

    def constant(self, name: str) -> Value:
        if name in self._constant_cache:
            return self._constant_cache[name]
        if name not in self.constants:
            raise UnknownReferenceError(name)
        entry = self.constants[name]
        if isinstance(entry, ConstantDefinition):
            value = coerce_value(entry.value, entry.data_type, self.evaluator.numeric_parser)
        else:
            value = infer_literal(entry)
        self._constant_cache[name] = value
        return value


class ExpressionEvaluator:
    """
    Evaluator for compiled output expressions.

    Numbers use Decimal arithmetic. Division and MOD by zero, SQRT of a
    negative and similar faults fail only the output being evaluated.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        numeric_parser: Optional[NumericParser] = None,
    ):
        self.settings = settings or get_settings()
        self.numeric_parser = numeric_parser or get_numeric_parser()
        self.rounding = ROUNDING_MODES[self.settings.round_mode]
        self._functions: Dict[str, Callable[[Sequence[Expr], _Scope], Value]] = {
            "POWER": self._power,
            "MOD": self._mod,
            "SQRT": self._sqrt,
            "ABS": self._abs,
            "ROUND": self._round,
            "FLOOR": self._floor,
            "CEILING": self._ceiling,
            "NOT": self._not,
            "IF": self._if,
            "MIN": self._min,
            "MAX": self._max,
            "SUM": self._sum,
            "AVG": self._avg,
        }

    def evaluate(
        self,
        ordered_outputs: Sequence[CompiledOutput],
        field_values: Mapping[str, Any],
        constants: Optional[Mapping[str, Any]] = None,
        document_id: Optional[str] = None,
        rejected: Optional[Mapping[str, FormulaEngineError]] = None,
    ) -> EvaluationResult:
        """
        Evaluate outputs for one document.

        Args:
            ordered_outputs: Compiled outputs sorted by execution order.
            field_values: Field name (or field id) to FieldValue or raw value.
            constants: Constant name to ConstantDefinition or raw value.
            document_id: Echoed into the result and logs.
            rejected: Output name to the error it fails with without being
                evaluated, e.g. the members of an output cycle.

        Returns:
            EvaluationResult with one OutputResult per output.
        """
        state = _DocumentState(self, ordered_outputs, field_values, constants or {}, rejected or {})

        for output in ordered_outputs:
            if state.definitions[output.name] is not output:
                logger.warning("Skipping duplicate output", output=output.name, document_id=document_id)
                continue
            state.results[output.name] = self.evaluate_output(output, state)

        result = EvaluationResult(document_id=document_id, outputs=state.results)
        logger.info(
            "Document evaluated",
            document_id=document_id,
            outputs=len(result.outputs),
            failed=len(result.failed),
        )
        return result

    def evaluate_output(self, output: CompiledOutput, state: _DocumentState) -> OutputResult:
        result = OutputResult(
            name=output.name,
            data_type=output.data_type,
            expression=output.expression,
            execution_order=output.execution_order,
            decimal_places=output.decimal_places,
        )
        scope = _Scope(self, state)

        rejection = state.rejected.get(output.name)
        if rejection is not None:
            return self._failed(result, rejection)

        try:
            if not output.is_valid:
                raise InvalidExpressionError(output.name)
            try:
                ast = parse_expression(output.expression)
                self._check_dependencies(ast, state)
                value = self._finalize(self._eval(ast, scope))
                processed = render(ast, scope.substitutions.get)
            except RecursionError:
                raise ExpressionTooDeepError(output.name) from None
        except EvaluationError as e:
            return self._failed(result, e)

        result.value = value
        result.success = True
        result.data_type = _result_type(value, output.data_type)
        result.confidence = scope.confidence
        result.needs_review = result.confidence < self.settings.min_confidence_threshold
        result.processed_expression = processed
        return result

    def _failed(self, result: OutputResult, error: FormulaEngineError) -> OutputResult:
        result.success = False
        result.error_code = error.error_code
        result.error_message = error.message
        result.confidence = 0.0
        logger.info(
            "Output evaluation failed",
            output=result.name,
            error_code=error.error_code,
            error=error.message,
        )
        return result

    def _check_dependencies(self, ast: Expr, state: _DocumentState) -> None:
        """Fail fast when a referenced output already failed or was compiled invalid."""
        for ref in iter_references(ast):
            if not isinstance(ref, (OutputRef, NameRef)) or ref.name not in state.output_names:
                continue
            if ref.name in state.invalid_names or ref.name in state.rejected:
                raise PropagatedFailure(ref.name)
            previous = state.results.get(ref.name)
            if previous is not None and not previous.success:
                raise PropagatedFailure(ref.name)

    def _finalize(self, value: Value) -> Value:
        """Trim float noise from numeric results."""
        if not isinstance(value, Decimal):
            return value
        try:
            trimmed = value.quantize(Decimal(1).scaleb(-self.settings.result_precision), rounding=self.rounding)
            trimmed = trimmed.normalize()
            if trimmed == trimmed.to_integral_value():
                trimmed = trimmed.quantize(Decimal(1))
        except InvalidOperation:
            # Too many digits for the context; keep the value as computed
            return value
        return trimmed

    # -------------------------------------------------------------------------
    # AST walk
    # -------------------------------------------------------------------------

    def _eval(self, expr: Expr, scope: _Scope) -> Value:
        try:
            return self._eval_node(expr, scope)
        except (DecimalException, OverflowError) as e:
            raise ArithmeticFault(f"Arithmetic error: {type(e).__name__}") from e

    def _eval_node(self, expr: Expr, scope: _Scope) -> Value:
        if isinstance(expr, NumberLiteral):
            return expr.value
        if isinstance(expr, BooleanLiteral):
            return expr.value
        if isinstance(expr, (InputRef, OutputRef, ConstantRef, NameRef)):
            return scope.resolve(expr)
        if isinstance(expr, UnaryOp):
            operand = self._eval_node(expr.operand, scope)
            if isinstance(operand, bool) or not isinstance(operand, Decimal):
                raise TypeMismatchError(f"Cannot negate a {type_name(operand)} value")
            return -operand
        if isinstance(expr, BinaryOp):
            return self._binary(expr, scope)
        return self._call(expr, scope)

    def _binary(self, expr: BinaryOp, scope: _Scope) -> Value:
        if expr.op == "AND":
            return self._truthy(self._eval_node(expr.left, scope)) and self._truthy(self._eval_node(expr.right, scope))
        if expr.op == "OR":
            return self._truthy(self._eval_node(expr.left, scope)) or self._truthy(self._eval_node(expr.right, scope))

        left = self._eval_node(expr.left, scope)
        right = self._eval_node(expr.right, scope)

        if expr.op in ("=", "<>"):
            if type_name(left) != type_name(right):
                raise TypeMismatchError(f"Cannot compare {type_name(left)} with {type_name(right)}")
            return (left == right) if expr.op == "=" else (left != right)
        if expr.op in ("<", ">", "<=", ">="):
            return self._order(expr.op, left, right)
        return self._arithmetic(expr.op, left, right)

    def _order(self, op: str, left: Value, right: Value) -> bool:
        kind = type_name(left)
        if kind != type_name(right) or kind not in (DataType.NUMBER.value, DataType.DATE.value):
            raise TypeMismatchError(f"Cannot order {type_name(left)} and {type_name(right)} with '{op}'")
        if op == "<":
            return left < right
        if op == ">":
            return left > right
        if op == "<=":
            return left <= right
        return left >= right

    def _arithmetic(self, op: str, left: Value, right: Value) -> Value:
        left_kind, right_kind = type_name(left), type_name(right)

        if left_kind == right_kind == DataType.NUMBER.value:
            if op == "+":
                return left + right
            if op == "-":
                return left - right
            if op == "*":
                return left * right
            if right == 0:
                raise ArithmeticFault("Division by zero")
            return left / right

        # Date arithmetic: date - date is days; date +/- days is a date
        if left_kind == right_kind == DataType.DATE.value and op == "-":
            return Decimal((left - right).days)
        if left_kind == DataType.DATE.value and right_kind == DataType.NUMBER.value and op in ("+", "-"):
            days = _whole_days(right)
            return left + days if op == "+" else left - days
        if left_kind == DataType.NUMBER.value and right_kind == DataType.DATE.value and op == "+":
            return right + _whole_days(left)

        raise TypeMismatchError(f"Cannot apply '{op}' to {left_kind} and {right_kind}")

    def _call(self, expr: FunctionCall, scope: _Scope) -> Value:
        handler = self._functions.get(expr.name)
        if handler is None:
            raise UnknownReferenceError(expr.name, kind="function")
        minimum, maximum = FUNCTION_ARITY[expr.name]
        count = len(expr.args)
        if count < minimum or (maximum is not None and count > maximum):
            if maximum is None:
                expected = f"at least {minimum}"
            elif minimum == maximum:
                expected = str(minimum)
            else:
                expected = f"{minimum} to {maximum}"
            raise EvaluationError(
                f"{expr.name} expects {expected} argument(s) but got {count}",
                details={"function": expr.name, "arguments": count},
            )
        return handler(expr.args, scope)

    # -------------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------------

    def _number(self, expr: Expr, scope: _Scope, function: str) -> Decimal:
        value = self._eval_node(expr, scope)
        if isinstance(value, bool) or not isinstance(value, Decimal):
            raise TypeMismatchError(f"{function} expects a number but got {type_name(value)}")
        return value

    def _truthy(self, value: Value) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, Decimal):
            return value != 0
        raise TypeMismatchError(f"Expected a condition but got {type_name(value)}")

    def _power(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        base = self._number(args[0], scope, "POWER")
        exponent = self._number(args[1], scope, "POWER")
        if base == 0 and exponent < 0:
            raise ArithmeticFault("POWER of zero to a negative exponent")
        if exponent == exponent.to_integral_value():
            return base ** int(exponent)
        if base < 0:
            raise ArithmeticFault("POWER of a negative base to a fractional exponent")
        return base ** exponent

    def _mod(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        dividend = self._number(args[0], scope, "MOD")
        divisor = self._number(args[1], scope, "MOD")
        if divisor == 0:
            raise ArithmeticFault("MOD by zero")
        # Decimal % truncates toward zero: the result takes the dividend's sign
        return dividend % divisor

    def _sqrt(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        value = self._number(args[0], scope, "SQRT")
        if value < 0:
            raise ArithmeticFault("SQRT of a negative number")
        return value.sqrt()

    def _abs(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        return abs(self._number(args[0], scope, "ABS"))

    def _round(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        value = self._number(args[0], scope, "ROUND")
        digits = 0
        if len(args) > 1:
            places = self._number(args[1], scope, "ROUND")
            if places != places.to_integral_value():
                raise TypeMismatchError("ROUND expects a whole number of digits")
            digits = int(places)
        return value.quantize(Decimal(1).scaleb(-digits), rounding=self.rounding)

    def _floor(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        return self._number(args[0], scope, "FLOOR").to_integral_value(rounding=ROUND_FLOOR)

    def _ceiling(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        return self._number(args[0], scope, "CEILING").to_integral_value(rounding=ROUND_CEILING)

    def _not(self, args: Sequence[Expr], scope: _Scope) -> bool:
        return not self._truthy(self._eval_node(args[0], scope))

    def _if(self, args: Sequence[Expr], scope: _Scope) -> Value:
        branch = args[1] if self._truthy(self._eval_node(args[0], scope)) else args[2]
        return self._eval_node(branch, scope)

    def _comparable(self, args: Sequence[Expr], scope: _Scope, function: str) -> List[Value]:
        values = [self._eval_node(arg, scope) for arg in args]
        kinds = {type_name(v) for v in values}
        if len(kinds) != 1 or not kinds <= {DataType.NUMBER.value, DataType.DATE.value}:
            raise TypeMismatchError(f"{function} expects numbers or dates of one type")
        return values

    def _min(self, args: Sequence[Expr], scope: _Scope) -> Value:
        return min(self._comparable(args, scope, "MIN"))

    def _max(self, args: Sequence[Expr], scope: _Scope) -> Value:
        return max(self._comparable(args, scope, "MAX"))

    def _sum(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        return sum((self._number(arg, scope, "SUM") for arg in args), Decimal(0))

    def _avg(self, args: Sequence[Expr], scope: _Scope) -> Decimal:
        return self._sum(args, scope) / len(args)


def display(value: Any) -> str:
    """Render a value the way it appears in a processed formula."""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, date):
        return value.isoformat()
    return f'"{value}"'


def _whole_days(value: Decimal) -> timedelta:
    if value != value.to_integral_value():
        raise TypeMismatchError("Date arithmetic needs a whole number of days")
    return timedelta(days=int(value))


def _result_type(value: Value, declared: DataType) -> DataType:
    kind = DataType.parse(type_name(value))
    if kind == DataType.NUMBER and declared.is_numeric:
        return declared
    return kind
