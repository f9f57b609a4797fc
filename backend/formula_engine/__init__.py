"""
Formula Engine - visual formula canvas to ordered, typed results.

Pipeline:
1. Parse the canvas into a typed node graph
2. Compile each Output node into an expression string
3. Extract dependencies and order outputs (outputs feeding other outputs first)
4. Evaluate per document with confidence scores and per-output failure isolation
"""

from backend.formula_engine.orchestrator import (
    calculate_document,
    compile_query_canvas,
    merge_constants,
)
from backend.formula_engine.models import (
    CompiledOutput,
    ConfidenceLevel,
    ConstantDefinition,
    DataType,
    EvaluationResult,
    FieldDefinition,
    FieldValue,
    OutputResult,
    QueryCompilation,
)
from backend.formula_engine.ordering import partition_execution_order, resolve_execution_order

__version__ = "1.0.0"
__all__ = [
    "calculate_document",
    "compile_query_canvas",
    "merge_constants",
    "partition_execution_order",
    "resolve_execution_order",
    "CompiledOutput",
    "ConfidenceLevel",
    "ConstantDefinition",
    "DataType",
    "EvaluationResult",
    "FieldDefinition",
    "FieldValue",
    "OutputResult",
    "QueryCompilation",
]
