"""
Expression grammar.

Tokenizer, AST and recursive-descent parser for the persisted formula
strings, e.g. "([Input:Price#12] * 0.15)" or "IF((Tax > 0), Tax, 0)".

Precedence, lowest first: OR, AND, comparison, + -, * /, unary -, primary.
Binary operators are parsed by precedence climbing, so each level of
parentheses costs a fixed, small number of stack frames.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Callable, Iterator, List, Optional, Tuple, Union

from backend.exceptions import ExpressionSyntaxError, ExpressionTooDeepError

TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<ref>\[(?P<ref_kind>Input|Output|Constant):(?P<ref_body>[^\]]*)\])
    |(?P<number>\d+(?:\.\d*)?|\.\d+)
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op><>|>=|<=|[-+*/=<>(),])
    """,
    re.VERBOSE,
)

COMPARISON_OPERATORS = ("=", "<>", "<", ">", "<=", ">=")

BINARY_PRECEDENCE = {
    "OR": 1,
    "AND": 2,
    **{op: 3 for op in COMPARISON_OPERATORS},
    "+": 4,
    "-": 4,
    "*": 5,
    "/": 5,
}


@dataclass(frozen=True)
class Token:
    kind: str  # ref | number | ident | op | end
    text: str
    position: int
    ref_kind: Optional[str] = None
    ref_body: Optional[str] = None


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class NumberLiteral:
    value: Decimal
    text: str


@dataclass(frozen=True)
class BooleanLiteral:
    value: bool


@dataclass(frozen=True)
class InputRef:
    name: str
    field_id: Optional[str] = None


@dataclass(frozen=True)
class OutputRef:
    name: str


@dataclass(frozen=True)
class ConstantRef:
    name: str


@dataclass(frozen=True)
class NameRef:
    """Bare identifier: another output, or a named constant."""
    name: str


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Expr"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple["Expr", ...]


Expr = Union[
    NumberLiteral, BooleanLiteral, InputRef, OutputRef, ConstantRef, NameRef,
    UnaryOp, BinaryOp, FunctionCall,
]
Reference = Union[InputRef, OutputRef, ConstantRef, NameRef]


# =============================================================================
# Tokenizer
# =============================================================================

def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    while position < len(text):
        match = TOKEN_PATTERN.match(text, position)
        if not match:
            raise ExpressionSyntaxError(
                f"Unexpected character '{text[position]}' at position {position}",
                position=position,
            )
        kind = match.lastgroup
        if kind == "ref_body" or kind == "ref_kind":
            kind = "ref"
        if kind != "ws":
            tokens.append(Token(
                kind=kind,
                text=match.group(0),
                position=position,
                ref_kind=match.group("ref_kind"),
                ref_body=match.group("ref_body"),
            ))
        position = match.end()
    tokens.append(Token(kind="end", text="", position=len(text)))
    return tokens


# =============================================================================
# Parser
# =============================================================================

class _Parser:

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def at_op(self, *ops: str) -> bool:
        return self.current.kind == "op" and self.current.text in ops

    def at_keyword(self, word: str) -> bool:
        return self.current.kind == "ident" and self.current.text.upper() == word

    def expect_op(self, op: str) -> Token:
        if not self.at_op(op):
            raise self.error(f"Expected '{op}'")
        return self.advance()

    def error(self, message: str) -> ExpressionSyntaxError:
        token = self.current
        found = token.text or "end of formula"
        return ExpressionSyntaxError(
            f"{message} but found '{found}' at position {token.position}",
            position=token.position,
        )

    def parse(self) -> "Expr":
        if self.current.kind == "end":
            raise ExpressionSyntaxError("Formula is empty", position=0)
        expr = self.parse_binary()
        if self.current.kind != "end":
            raise self.error("Expected end of formula")
        return expr

    def binary_operator(self) -> Optional[str]:
        token = self.current
        if token.kind == "ident" and token.text.upper() in ("AND", "OR"):
            return token.text.upper()
        if token.kind == "op" and token.text in BINARY_PRECEDENCE:
            return token.text
        return None

    def parse_binary(self, min_precedence: int = 1) -> "Expr":
        """Precedence climbing; one frame per nesting level rather than per precedence level."""
        left = self.parse_unary()
        compared = False
        while True:
            op = self.binary_operator()
            if op is None or BINARY_PRECEDENCE[op] < min_precedence:
                return left
            if op in COMPARISON_OPERATORS:
                # Comparisons do not chain
                if compared:
                    return left
                compared = True
            self.advance()
            left = BinaryOp(op, left, self.parse_binary(BINARY_PRECEDENCE[op] + 1))

    def parse_unary(self) -> "Expr":
        if self.at_op("-", "+"):
            op = self.advance().text
            operand = self.parse_unary()
            if op == "+":
                return operand
            if isinstance(operand, NumberLiteral):
                text = operand.text[1:] if operand.text.startswith("-") else f"-{operand.text}"
                return NumberLiteral(-operand.value, text)
            return UnaryOp("-", operand)
        return self.parse_primary()

    def parse_primary(self) -> "Expr":
        token = self.current

        if token.kind == "number":
            self.advance()
            return NumberLiteral(Decimal(token.text), token.text)

        if token.kind == "ref":
            self.advance()
            return _reference(token)

        if token.kind == "ident":
            self.advance()
            word = token.text.upper()
            if self.at_op("("):
                return FunctionCall(word, self.parse_arguments())
            if word in ("TRUE", "FALSE"):
                return BooleanLiteral(word == "TRUE")
            if word in ("AND", "OR"):
                raise ExpressionSyntaxError(
                    f"Unexpected '{token.text}' at position {token.position}",
                    position=token.position,
                )
            return NameRef(token.text)

        if self.at_op("("):
            self.advance()
            expr = self.parse_binary()
            self.expect_op(")")
            return expr

        raise self.error("Expected a value")

    def parse_arguments(self) -> Tuple["Expr", ...]:
        self.expect_op("(")
        args: List[Expr] = []
        if self.at_op(")"):
            self.advance()
            return tuple(args)
        while True:
            args.append(self.parse_binary())
            if self.at_op(","):
                self.advance()
                continue
            self.expect_op(")")
            return tuple(args)


def _reference(token: Token) -> "Reference":
    body = (token.ref_body or "").strip()
    if not body:
        raise ExpressionSyntaxError(
            f"Empty {token.ref_kind} reference at position {token.position}",
            position=token.position,
        )
    if token.ref_kind == "Input":
        name, sep, field_id = body.rpartition("#")
        if not sep:
            return InputRef(body)
        return InputRef(name.strip(), field_id.strip() or None)
    if token.ref_kind == "Output":
        return OutputRef(body)
    return ConstantRef(body)


@lru_cache(maxsize=1024)
def parse_expression(text: str) -> "Expr":
    """Parse a formula string into an AST. Results are cached (the AST is immutable)."""
    try:
        return _Parser(text).parse()
    except RecursionError:
        raise ExpressionTooDeepError() from None


# =============================================================================
# Traversal and rendering
# =============================================================================

def iter_references(expr: "Expr") -> Iterator["Reference"]:
    """Yield every reference in left-to-right order."""
    if isinstance(expr, (InputRef, OutputRef, ConstantRef, NameRef)):
        yield expr
    elif isinstance(expr, UnaryOp):
        yield from iter_references(expr.operand)
    elif isinstance(expr, BinaryOp):
        yield from iter_references(expr.left)
        yield from iter_references(expr.right)
    elif isinstance(expr, FunctionCall):
        for arg in expr.args:
            yield from iter_references(arg)


def render(expr: "Expr", substitute: Optional[Callable[["Reference"], Optional[str]]] = None) -> str:
    """
    Render an AST back to formula syntax.

    When substitute is given, each reference is replaced by whatever it
    returns (None keeps the reference as written). Used for audit trails.
    """
    if isinstance(expr, (InputRef, OutputRef, ConstantRef, NameRef)):
        if substitute is not None:
            replacement = substitute(expr)
            if replacement is not None:
                return replacement
        return _render_reference(expr)
    if isinstance(expr, NumberLiteral):
        return expr.text
    if isinstance(expr, BooleanLiteral):
        return "TRUE" if expr.value else "FALSE"
    if isinstance(expr, UnaryOp):
        return f"-{render(expr.operand, substitute)}"
    if isinstance(expr, BinaryOp):
        return f"({render(expr.left, substitute)} {expr.op} {render(expr.right, substitute)})"
    return f"{expr.name}({', '.join(render(arg, substitute) for arg in expr.args)})"


def _render_reference(ref: "Reference") -> str:
    if isinstance(ref, InputRef):
        return f"[Input:{ref.name}#{ref.field_id}]" if ref.field_id else f"[Input:{ref.name}]"
    if isinstance(ref, OutputRef):
        return f"[Output:{ref.name}]"
    if isinstance(ref, ConstantRef):
        return f"[Constant:{ref.name}]"
    return ref.name
