"""
Dependency extraction.

Classifies what an output's formula reads into input fields, other outputs,
global constants and local constants. Works either on the canvas graph at
compile time or on a persisted expression string when the graph is gone.
"""

from typing import Collection, List, Optional, Set

import structlog

from backend.formula_engine.compiler import FieldCatalog
from backend.formula_engine.expression import (
    ConstantRef,
    InputRef,
    NameRef,
    OutputRef,
    iter_references,
    parse_expression,
)
from backend.formula_engine.models import (
    INVALID_EXPRESSION,
    ConstantNode,
    DependencySet,
    FormulaGraph,
    OutputNode,
    VariableNode,
)

logger = structlog.get_logger(__name__)


def extract_from_graph(
    output: OutputNode,
    graph: FormulaGraph,
    field_catalog: Optional[FieldCatalog] = None,
) -> DependencySet:
    """
    Walk the subgraph feeding an output and classify its leaves.

    Nodes are visited depth-first in port order, so each list follows the
    order in which the symbols appear in the compiled expression. Other
    outputs are recorded, never expanded.
    """
    dependencies = DependencySet()
    visited: Set[str] = {output.node_id}
    stack: List[str] = [edge.source_id for edge in reversed(graph.inbound(output.node_id))]

    while stack:
        node_id = stack.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        node = graph.get(node_id)

        if isinstance(node, VariableNode):
            name = _field_name(node, field_catalog)
            if name:
                dependencies.add_input(name)
        elif isinstance(node, ConstantNode):
            name = node.name or node.constant_id
            if name:
                dependencies.add_constant(name, node.is_global)
        elif isinstance(node, OutputNode):
            dependencies.add_output(node.name)
        elif node is not None:
            stack.extend(edge.source_id for edge in reversed(graph.inbound(node_id)))

    return dependencies


def extract_from_expression(
    expression: str,
    global_constants: Collection[str] = (),
    local_constants: Collection[str] = (),
) -> DependencySet:
    """
    Classify the references in a persisted expression string.

    Bare identifiers name another output unless they match a known constant.
    Local constants shadow global ones of the same name; [Constant:...]
    references not in either catalog count as local.

    Raises:
        ExpressionSyntaxError: The expression cannot be parsed.
        ExpressionTooDeepError: The expression nests too deeply to parse.
    """
    dependencies = DependencySet()
    if not expression or expression == INVALID_EXPRESSION:
        return dependencies

    for ref in iter_references(parse_expression(expression)):
        if isinstance(ref, InputRef):
            dependencies.add_input(ref.name)
        elif isinstance(ref, OutputRef):
            dependencies.add_output(ref.name)
        elif isinstance(ref, ConstantRef):
            dependencies.add_constant(
                ref.name,
                is_global=ref.name in global_constants and ref.name not in local_constants,
            )
        elif isinstance(ref, NameRef):
            if ref.name in local_constants:
                dependencies.add_constant(ref.name, is_global=False)
            elif ref.name in global_constants:
                dependencies.add_constant(ref.name, is_global=True)
            else:
                dependencies.add_output(ref.name)

    return dependencies


def _field_name(node: VariableNode, field_catalog: Optional[FieldCatalog]) -> str:
    if field_catalog is None:
        return node.name
    definition = field_catalog.get(node.field_id)
    return definition.name if definition else ""
