"""
Expression compiler.

Walks the formula graph backward from each Output node and renders the
expression string the worker later evaluates. Problems are collected as
diagnostics per output; one invalid output never blocks the others.
"""

import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Set

import structlog

from backend.config import Settings, get_settings
from backend.exceptions import (
    CircularReferenceError,
    DuplicateOutputError,
    FormulaEngineError,
    GraphTooDeepError,
    InvalidNameError,
    MissingConnectionError,
    OutputNotConnectedError,
    UnknownOperationError,
    UnresolvedVariableError,
)
from backend.formula_engine.models import (
    CompileDiagnostic,
    ConstantDefinition,
    ConstantNode,
    FieldDefinition,
    FormulaGraph,
    OperationNode,
    OutputNode,
    VariableNode,
)
from backend.formula_engine.operations import OperationRegistry, get_operation_registry

logger = structlog.get_logger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PLAIN_NUMBER_PATTERN = re.compile(r"^-?(?:\d+(?:\.\d+)?|\.\d+)$")
RESERVED_WORDS = {"AND", "OR", "TRUE", "FALSE"}

FieldCatalog = Mapping[str, FieldDefinition]


@dataclass
class OutputCompilation:
    """Compiled expression (None when invalid) for one Output node."""
    output: OutputNode
    expression: Optional[str]
    diagnostics: List[CompileDiagnostic] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.expression is not None and not any(d.is_error for d in self.diagnostics)


class _FatalCompileError(Exception):
    """Aborts compilation of a single output."""

    def __init__(self, error: FormulaEngineError, node_id: str):
        self.error = error
        self.node_id = node_id
        super().__init__(error.message)


class _OutputContext:
    """Per-output compile state: recursion stack and collected diagnostics."""

    def __init__(self, output: OutputNode):
        self.output = output
        self.stack: Set[str] = set()
        self.diagnostics: List[CompileDiagnostic] = []
        self._seen: Set[tuple] = set()

    def report(self, error: FormulaEngineError, node_id: Optional[str], severity: str = "error") -> None:
        key = (error.error_code, node_id, error.message)
        if key in self._seen:
            return
        self._seen.add(key)
        self.diagnostics.append(
            CompileDiagnostic.from_error(error, output_name=self.output.name, node_id=node_id, severity=severity)
        )


class ExpressionCompiler:
    """
    Graph-to-expression compiler.

    Rendering rules:
    - Variable -> [Input:<name>#<id>] (unresolved fields become 0 by default)
    - Constant -> its literal value (looked up in the constant catalog when the
      node carries none), or 0 when there is no value at all
    - Operation -> registry formatting over its inputs in port order
    - Output reached from another output's graph -> reference by name
    """

    def __init__(
        self,
        registry: Optional[OperationRegistry] = None,
        field_catalog: Optional[FieldCatalog] = None,
        settings: Optional[Settings] = None,
        constants: Optional[Mapping[str, Any]] = None,
    ):
        self.registry = registry or get_operation_registry()
        self.field_catalog = field_catalog
        self.constants = constants or {}
        self.settings = settings or get_settings()

    def compile_query(self, graph: FormulaGraph) -> List[OutputCompilation]:
        """Compile every Output node on the canvas, independently."""
        results: List[OutputCompilation] = []
        seen_names: Set[str] = set()

        for output in graph.outputs():
            if output.name in seen_names:
                error = DuplicateOutputError(output.name)
                results.append(OutputCompilation(
                    output=output,
                    expression=None,
                    diagnostics=[CompileDiagnostic.from_error(error, output.name, output.node_id)],
                ))
                continue
            seen_names.add(output.name)
            results.append(self.compile_output(output, graph))

        logger.info(
            "Canvas compiled",
            outputs=len(results),
            invalid=sum(1 for r in results if not r.is_valid),
        )
        return results

    def compile_output(self, output: OutputNode, graph: FormulaGraph) -> OutputCompilation:
        """Compile the expression feeding one Output node."""
        context = _OutputContext(output)
        expression = None
        if not is_reference_safe(output.name):
            context.report(InvalidNameError(output.name), output.node_id)
        else:
            try:
                expression = self._build_output(output, graph, context)
            except _FatalCompileError as fatal:
                context.report(fatal.error, fatal.node_id)

        result = OutputCompilation(output=output, expression=expression, diagnostics=context.diagnostics)
        if not result.is_valid:
            result.expression = None
            logger.info(
                "Output compiled as invalid",
                output=output.name,
                errors=[d.message for d in context.diagnostics if d.is_error],
            )
        else:
            logger.debug("Output compiled", output=output.name, expression=expression)
        return result

    def _build_output(self, output: OutputNode, graph: FormulaGraph, context: _OutputContext) -> Optional[str]:
        context.stack.add(output.node_id)
        try:
            inbound = graph.inbound(output.node_id)
            if not inbound:
                context.report(OutputNotConnectedError(output.name), output.node_id)
                return None
            return self._build(inbound[0].source_id, graph, context, depth=1)
        finally:
            context.stack.discard(output.node_id)

    def _build(self, node_id: str, graph: FormulaGraph, context: _OutputContext, depth: int) -> Optional[str]:
        if node_id in context.stack:
            raise _FatalCompileError(CircularReferenceError(node_id), node_id)
        if depth > self.settings.max_graph_depth:
            raise _FatalCompileError(GraphTooDeepError(self.settings.max_graph_depth), node_id)

        node = graph.get(node_id)
        context.stack.add(node_id)
        try:
            if isinstance(node, VariableNode):
                return self._build_variable(node, context)
            if isinstance(node, ConstantNode):
                return self._build_constant(node, context)
            if isinstance(node, OperationNode):
                return self._build_operation(node, graph, context, depth)
            if isinstance(node, OutputNode):
                if not is_reference_safe(node.name):
                    context.report(InvalidNameError(node.name), node.node_id)
                    return None
                return render_output_reference(node.name)
            return "0"
        finally:
            context.stack.discard(node_id)

    def _build_variable(self, node: VariableNode, context: _OutputContext) -> Optional[str]:
        if self.field_catalog is None:
            name = node.name
        else:
            definition = self.field_catalog.get(node.field_id)
            name = definition.name if definition else ""

        if not name:
            if self.settings.unresolved_variable_policy == "invalid":
                context.report(UnresolvedVariableError(node.field_id), node.node_id)
                return None
            logger.warning(
                "Unresolved input field compiled as 0",
                field_id=node.field_id,
                output=context.output.name,
            )
            return "0"
        if not is_reference_safe(name):
            context.report(InvalidNameError(name), node.node_id)
            return None
        return f"[Input:{name}#{node.field_id}]"

    def _build_constant(self, node: ConstantNode, context: _OutputContext) -> Optional[str]:
        value = node.value
        if not value:
            value = self._catalog_value(node)
        if not self.settings.inline_constants and node.name:
            return self._constant_reference(node, context)
        if value is None or value == "":
            return "0"
        if PLAIN_NUMBER_PATTERN.match(value):
            return value
        if value.upper() in ("TRUE", "FALSE"):
            return value.upper()
        if node.name:
            return self._constant_reference(node, context)
        return "0"

    def _constant_reference(self, node: ConstantNode, context: _OutputContext) -> Optional[str]:
        if not is_reference_safe(node.name):
            context.report(InvalidNameError(node.name), node.node_id)
            return None
        return f"[Constant:{node.name}]"

    def _catalog_value(self, node: ConstantNode) -> Optional[str]:
        """Value of a constant node that only names a catalog entry."""
        for key in (node.name, node.constant_id):
            if key and key in self.constants:
                entry = self.constants[key]
                raw = entry.value if isinstance(entry, ConstantDefinition) else entry
                return None if raw is None else str(raw).strip()
        return None

    def _build_operation(
        self,
        node: OperationNode,
        graph: FormulaGraph,
        context: _OutputContext,
        depth: int,
    ) -> Optional[str]:
        connections = graph.inbound(node.node_id)
        connected_ports = {edge.target_port for edge in connections}
        required = self.registry.arity(node.operation_id)

        if node.operation_id not in self.registry:
            context.report(UnknownOperationError(node.operation_id), node.node_id, severity="warning")

        missing = [port for port in range(1, required + 1) if port not in connected_ports]
        if missing:
            label = self.registry.label(node.operation_id)
            for port in missing:
                context.report(MissingConnectionError(label, [port]), node.node_id)
            return None

        args: List[str] = []
        invalid = False
        for edge in connections:
            expression = self._build(edge.source_id, graph, context, depth + 1)
            if expression is None:
                invalid = True
                continue
            args.append(expression)

        if invalid:
            return None
        return self.registry.format(node.operation_id, args)


def is_reference_safe(name: str) -> bool:
    """Names end a bracketed reference at the first ']'."""
    return "]" not in name


def render_output_reference(name: str) -> str:
    """Bare name when it is a safe identifier, bracketed reference otherwise."""
    if IDENTIFIER_PATTERN.match(name) and name.upper() not in RESERVED_WORDS:
        return name
    return f"[Output:{name}]"
