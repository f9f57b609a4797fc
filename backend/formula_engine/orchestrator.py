"""
Query-level pipeline.

compile_query_canvas: canvas -> graph -> expressions + dependencies -> order
calculate_document: compiled outputs + one document's field values -> results
"""

from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from backend.config import Settings, get_settings
from backend.exceptions import (
    ExpressionSyntaxError,
    ExpressionTooDeepError,
    OutputCycleError,
    PropagatedFailure,
)
from backend.formula_engine.canvas_parser import parse_canvas
from backend.formula_engine.compiler import ExpressionCompiler, FieldCatalog
from backend.formula_engine.dependencies import extract_from_expression, extract_from_graph
from backend.formula_engine.evaluator import ExpressionEvaluator
from backend.formula_engine.models import (
    INVALID_EXPRESSION,
    CompileDiagnostic,
    CompiledOutput,
    EvaluationResult,
    QueryCompilation,
)
from backend.formula_engine.operations import OperationRegistry
from backend.formula_engine.ordering import partition_execution_order
from backend.middleware.logging import log_performance

logger = structlog.get_logger(__name__)


@log_performance("compile_query")
def compile_query_canvas(
    canvas: Any,
    field_catalog: Optional[FieldCatalog] = None,
    constants: Optional[Mapping[str, Any]] = None,
    registry: Optional[OperationRegistry] = None,
    settings: Optional[Settings] = None,
) -> QueryCompilation:
    """
    Compile every output on a formula canvas.

    Args:
        canvas: Canvas document (JSON string or mapping).
        field_catalog: Field id to FieldDefinition. None uses the names
            stored on the variable nodes.
        constants: Constant catalog used for constant nodes without a value.
        registry: Operation registry; the default table when omitted.
        settings: Engine settings; the cached application settings when omitted.

    Returns:
        QueryCompilation with outputs in execution order. Outputs in a cycle
        with each other are marked invalid.

    Raises:
        CanvasParseError: The document is not a canvas at all.
    """
    parsed = parse_canvas(canvas)
    compiler = ExpressionCompiler(
        registry=registry,
        field_catalog=field_catalog,
        settings=settings,
        constants=constants,
    )

    compiled: List[CompiledOutput] = []
    for result in compiler.compile_query(parsed.graph):
        output = result.output
        compiled.append(CompiledOutput(
            name=output.name,
            output_id=output.output_id,
            expression=result.expression if result.is_valid else INVALID_EXPRESSION,
            is_valid=result.is_valid,
            dependencies=extract_from_graph(output, parsed.graph, field_catalog),
            diagnostics=list(result.diagnostics),
            data_type=output.data_type,
            decimal_places=output.decimal_places,
        ))

    ordered, cycle_error = partition_execution_order(compiled)
    if cycle_error is not None:
        members = {name for cycle in cycle_error.cycles for name in cycle}
        ordered = [
            _invalidate(output, CompileDiagnostic.from_error(cycle_error, output_name=output.name))
            if output.name in members else output
            for output in ordered
        ]
    _flag_invalid_dependencies(ordered)

    compilation = QueryCompilation(outputs=ordered, canvas_diagnostics=parsed.diagnostics)
    logger.info(
        "Query compiled",
        outputs=len(compilation.outputs),
        valid=len(compilation.formulas),
        errors=len(compilation.errors),
    )
    return compilation


@log_performance("calculate_document")
def calculate_document(
    compiled_outputs: Sequence[Union[CompiledOutput, Mapping[str, Any]]],
    field_values: Mapping[str, Any],
    constants: Optional[Mapping[str, Any]] = None,
    document_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> EvaluationResult:
    """
    Evaluate a query's compiled outputs against one document's field values.

    Accepts CompiledOutput objects or their persisted dict form. Outputs that
    carry an execution order are run in that order; otherwise the order is
    resolved from their dependencies (re-extracted from the expression when
    none were stored). Outputs in a cycle with each other fail with the
    cycle error; outputs reading them fail by propagation.
    """
    settings = settings or get_settings()
    constants = constants or {}
    outputs = [o if isinstance(o, CompiledOutput) else CompiledOutput.from_dict(o) for o in compiled_outputs]

    rejected: Dict[str, OutputCycleError] = {}
    if outputs and all(o.execution_order > 0 for o in outputs):
        ordered = sorted(outputs, key=lambda o: o.execution_order)
    else:
        ordered, cycle_error = partition_execution_order([_with_dependencies(o, constants) for o in outputs])
        if cycle_error is not None:
            rejected = {name: cycle_error for cycle in cycle_error.cycles for name in cycle}

    evaluator = ExpressionEvaluator(settings=settings)
    return evaluator.evaluate(ordered, field_values, constants, document_id=document_id, rejected=rejected)


def merge_constants(
    global_constants: Optional[Mapping[str, Any]] = None,
    local_constants: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Single lookup table for evaluation; a local constant shadows a global one."""
    merged: Dict[str, Any] = dict(global_constants or {})
    merged.update(local_constants or {})
    return merged


def _invalidate(output: CompiledOutput, diagnostic: CompileDiagnostic) -> CompiledOutput:
    return replace(
        output,
        expression=INVALID_EXPRESSION,
        is_valid=False,
        diagnostics=output.diagnostics + [diagnostic],
    )


def _flag_invalid_dependencies(ordered: List[CompiledOutput]) -> None:
    """Warn on valid outputs that (transitively) reference an invalid one; they will fail at evaluation."""
    valid = {output.name for output in ordered if output.is_valid}
    broken = {output.name for output in ordered if output.name not in valid}
    for output in ordered:
        if not output.is_valid:
            continue
        dependency = next((name for name in output.dependencies.outputs if name in broken), None)
        if dependency is None:
            continue
        broken.add(output.name)
        output.diagnostics.append(CompileDiagnostic.from_error(
            PropagatedFailure(dependency),
            output_name=output.name,
            severity="warning",
        ))


def _with_dependencies(output: CompiledOutput, constants: Mapping[str, Any]) -> CompiledOutput:
    deps = output.dependencies
    if not output.is_valid or deps.inputs or deps.outputs or deps.global_constants or deps.local_constants:
        return output
    try:
        extracted = extract_from_expression(output.expression, local_constants=constants)
    except (ExpressionSyntaxError, ExpressionTooDeepError):
        # Reported per output by the evaluator
        return output
    return replace(output, dependencies=extracted)
