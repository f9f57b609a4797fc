"""
Data model for the formula engine.

Covers the three stages of a query's formulas:
- Graph model decoded from the formula canvas (nodes + edges)
- CompiledOutput records produced by the compiler (expression + dependencies)
- OutputResult / EvaluationResult records produced per processed document
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from backend.exceptions import FormulaEngineError

INVALID_EXPRESSION = "INVALID"


class DataType(str, Enum):
    """Declared data type of a field, constant or output."""
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    BOOLEAN = "boolean"

    @property
    def is_numeric(self) -> bool:
        return self in (DataType.NUMBER, DataType.CURRENCY, DataType.PERCENTAGE)

    @classmethod
    def parse(cls, value: Any) -> "DataType":
        """Lenient lookup that accepts enum members, names and values."""
        if isinstance(value, DataType):
            return value
        if value is None or value == "":
            return cls.NUMBER
        text = str(value).strip().lower()
        if text == "string":
            return cls.TEXT
        for member in cls:
            if text in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unknown data type: {value}")


class ConfidenceLevel(str, Enum):
    """Confidence levels for calculated values."""
    HIGH = "high"      # >= 0.85
    MEDIUM = "medium"  # >= 0.65
    LOW = "low"        # >= 0.40
    VERY_LOW = "very_low"  # < 0.40

    @classmethod
    def from_score(cls, score: float) -> "ConfidenceLevel":
        if score >= 0.85:
            return cls.HIGH
        if score >= 0.65:
            return cls.MEDIUM
        if score >= 0.40:
            return cls.LOW
        return cls.VERY_LOW


class NodeKind(str, Enum):
    """Node variants on the formula canvas."""
    VARIABLE = "variable"
    CONSTANT = "constant"
    OPERATION = "operation"
    OUTPUT = "output"


# =============================================================================
# Graph Model
# =============================================================================

@dataclass(frozen=True)
class VariableNode:
    """Reference to an externally mapped input field."""
    node_id: str
    field_id: str
    name: str = ""

    @property
    def kind(self) -> NodeKind:
        return NodeKind.VARIABLE


@dataclass(frozen=True)
class ConstantNode:
    """Literal known at compile time, scoped globally or to one query."""
    node_id: str
    constant_id: Optional[str] = None
    name: str = ""
    value: Optional[str] = None
    is_global: bool = False

    @property
    def kind(self) -> NodeKind:
        return NodeKind.CONSTANT


@dataclass(frozen=True)
class OperationNode:
    """Operator or function resolved against the operation registry."""
    node_id: str
    operation_id: str

    @property
    def kind(self) -> NodeKind:
        return NodeKind.OPERATION


@dataclass(frozen=True)
class OutputNode:
    """Named terminal node; one calculated result of the query."""
    node_id: str
    name: str
    output_id: Optional[str] = None
    data_type: DataType = DataType.NUMBER
    decimal_places: int = 2

    @property
    def kind(self) -> NodeKind:
        return NodeKind.OUTPUT


Node = Union[VariableNode, ConstantNode, OperationNode, OutputNode]


@dataclass(frozen=True)
class Edge:
    """Connection from a node's output to a numbered input port of another node."""
    source_id: str
    target_id: str
    target_port: int = 1


@dataclass
class FormulaGraph:
    """Nodes and edges decoded from one formula canvas."""
    nodes: Dict[str, Node] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)

    def __post_init__(self):
        self._inbound: Dict[str, List[Edge]] = {}
        for edge in self.edges:
            self._inbound.setdefault(edge.target_id, []).append(edge)

    def add_edge(self, edge: Edge) -> None:
        self.edges.append(edge)
        self._inbound.setdefault(edge.target_id, []).append(edge)

    def get(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def inbound(self, node_id: str) -> List[Edge]:
        """Edges targeting a node, sorted ascending by port."""
        return sorted(self._inbound.get(node_id, []), key=lambda e: e.target_port)

    def outputs(self) -> List[OutputNode]:
        """Output nodes in canvas order."""
        return [n for n in self.nodes.values() if isinstance(n, OutputNode)]

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)


# =============================================================================
# Catalog entries (owned by external collaborators)
# =============================================================================

@dataclass(frozen=True)
class FieldDefinition:
    """Mapped input field as known to the field catalog."""
    field_id: str
    name: str
    data_type: DataType = DataType.NUMBER


@dataclass
class FieldValue:
    """One extracted field value for one document."""
    name: str
    value: Any
    confidence: float = 1.0
    data_type: DataType = DataType.NUMBER

    @classmethod
    def from_payload(cls, name: str, payload: Mapping[str, Any]) -> "FieldValue":
        """Build from {"value": ..., "confidence": ..., "data_type": ...}."""
        confidence = payload.get("confidence")
        return cls(
            name=name,
            value=payload.get("value"),
            confidence=1.0 if confidence is None else float(confidence),
            data_type=DataType.parse(payload.get("data_type")),
        )


def parse_decimal_places(value: Any, default: int = 2) -> int:
    """Decimal places from a canvas or persisted payload; null or empty means the default."""
    if value is None or value == "":
        return default
    try:
        places = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid decimal places: {value!r}") from None
    if places < 0:
        raise ValueError(f"Decimal places cannot be negative: {places}")
    return places


def parse_field_values(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Normalize a document's field payload.

    Mapping entries become FieldValue records; bare values are kept as-is and
    typed by the evaluator from their content.
    """
    return {
        name: FieldValue.from_payload(name, entry) if isinstance(entry, Mapping) else entry
        for name, entry in fields.items()
    }


@dataclass(frozen=True)
class ConstantDefinition:
    """Named constant from the global or query-local catalog."""
    name: str
    value: Any
    data_type: DataType = DataType.NUMBER
    is_global: bool = False


# =============================================================================
# Compilation
# =============================================================================

@dataclass
class CompileDiagnostic:
    """One problem found while parsing or compiling a canvas."""
    code: str
    message: str
    output_name: Optional[str] = None
    node_id: Optional[str] = None
    severity: str = "error"
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    @classmethod
    def from_error(
        cls,
        error: FormulaEngineError,
        output_name: Optional[str] = None,
        node_id: Optional[str] = None,
        severity: str = "error",
    ) -> "CompileDiagnostic":
        return cls(
            code=error.error_code,
            message=error.message,
            output_name=output_name,
            node_id=node_id,
            severity=severity,
            details=dict(error.details),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "output": self.output_name,
            "node_id": self.node_id,
            "severity": self.severity,
            "details": self.details,
        }


@dataclass
class DependencySet:
    """Categorized, ordered-unique symbols an expression references."""
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    global_constants: List[str] = field(default_factory=list)
    local_constants: List[str] = field(default_factory=list)

    def add_input(self, name: str) -> None:
        _append_unique(self.inputs, name)

    def add_output(self, name: str) -> None:
        _append_unique(self.outputs, name)

    def add_constant(self, name: str, is_global: bool) -> None:
        _append_unique(self.global_constants if is_global else self.local_constants, name)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "global_constants": list(self.global_constants),
            "local_constants": list(self.local_constants),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DependencySet":
        data = data or {}
        return cls(
            inputs=list(data.get("inputs") or []),
            outputs=list(data.get("outputs") or []),
            global_constants=list(data.get("global_constants") or []),
            local_constants=list(data.get("local_constants") or []),
        )


def _append_unique(items: List[str], name: str) -> None:
    if name not in items:
        items.append(name)


@dataclass
class CompiledOutput:
    """Persisted per Output node and re-read by the worker."""
    name: str
    expression: str = INVALID_EXPRESSION
    is_valid: bool = False
    execution_order: int = 0
    dependencies: DependencySet = field(default_factory=DependencySet)
    diagnostics: List[CompileDiagnostic] = field(default_factory=list)
    data_type: DataType = DataType.NUMBER
    decimal_places: int = 2
    output_id: Optional[str] = None

    @property
    def error_messages(self) -> List[str]:
        return [d.message for d in self.diagnostics if d.is_error]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "output_id": self.output_id,
            "expression": self.expression,
            "is_valid": self.is_valid,
            "execution_order": self.execution_order,
            "data_type": self.data_type.value,
            "decimal_places": self.decimal_places,
            "dependencies": self.dependencies.to_dict(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompiledOutput":
        expression = data.get("expression") or INVALID_EXPRESSION
        return cls(
            name=data["name"],
            output_id=data.get("output_id"),
            expression=expression,
            is_valid=bool(data.get("is_valid", expression != INVALID_EXPRESSION)),
            execution_order=int(data.get("execution_order") or 0),
            data_type=DataType.parse(data.get("data_type")),
            decimal_places=parse_decimal_places(data.get("decimal_places")),
            dependencies=DependencySet.from_dict(data.get("dependencies")),
        )


@dataclass
class QueryCompilation:
    """Result of compiling every Output node on one canvas."""
    outputs: List[CompiledOutput] = field(default_factory=list)
    canvas_diagnostics: List[CompileDiagnostic] = field(default_factory=list)

    @property
    def diagnostics(self) -> List[CompileDiagnostic]:
        found = list(self.canvas_diagnostics)
        for output in self.outputs:
            found.extend(output.diagnostics)
        return found

    @property
    def errors(self) -> List[str]:
        return [d.message for d in self.diagnostics if d.is_error]

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def formulas(self) -> Dict[str, str]:
        """Expression per valid output, keyed by output name."""
        return {o.name: o.expression for o in self.outputs if o.is_valid}

    def get(self, name: str) -> Optional[CompiledOutput]:
        return next((o for o in self.outputs if o.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "formulas": self.formulas,
            "errors": self.errors,
            "outputs": [o.to_dict() for o in self.outputs],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


# =============================================================================
# Evaluation
# =============================================================================

@dataclass
class OutputResult:
    """Calculated value of one output for one document."""
    name: str
    value: Any = None
    data_type: DataType = DataType.NUMBER
    confidence: float = 1.0
    success: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    expression: str = ""
    processed_expression: str = ""
    execution_order: int = 0
    decimal_places: int = 2
    needs_review: bool = False

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return ConfidenceLevel.from_score(self.confidence)

    @property
    def formatted_value(self) -> Optional[str]:
        """Display rendering using the output's formatting hints."""
        if not self.success or self.value is None:
            return None
        if isinstance(self.value, bool):
            return "TRUE" if self.value else "FALSE"
        if isinstance(self.value, Decimal):
            places = Decimal(1).scaleb(-self.decimal_places)
            rendered = f"{self.value.quantize(places):,}"
            if self.data_type == DataType.PERCENTAGE:
                return f"{rendered}%"
            return rendered
        if isinstance(self.value, date):
            return self.value.isoformat()
        return str(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": _json_value(self.value),
            "formatted_value": self.formatted_value,
            "data_type": self.data_type.value,
            "confidence": round(self.confidence, 4),
            "confidence_level": self.confidence_level.value,
            "needs_review": self.needs_review,
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "expression": self.expression,
            "processed_expression": self.processed_expression,
            "execution_order": self.execution_order,
        }


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


@dataclass
class EvaluationResult:
    """All output results for one processed document, in execution order."""
    document_id: Optional[str] = None
    outputs: Dict[str, OutputResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.outputs.values())

    @property
    def succeeded(self) -> List[OutputResult]:
        return [r for r in self.outputs.values() if r.success]

    @property
    def failed(self) -> List[OutputResult]:
        return [r for r in self.outputs.values() if not r.success]

    @property
    def values(self) -> Dict[str, Any]:
        return {name: r.value for name, r in self.outputs.items() if r.success}

    def __getitem__(self, name: str) -> OutputResult:
        return self.outputs[name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "success": self.success,
            "outputs": [r.to_dict() for r in self.outputs.values()],
        }
