"""
Formula API routes.

Provides endpoints for compiling formula canvases, calculating outputs for a
document, queueing batch calculations and listing the supported operations.
"""
from typing import Any, Dict, List, Optional, Union

import structlog
from celery.result import AsyncResult
from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from backend.celery_app import celery_app
from backend.exceptions import ValidationError
from backend.formula_engine.models import (
    ConstantDefinition,
    DataType,
    FieldDefinition,
    parse_field_values,
)
from backend.formula_engine.operations import get_operation_registry
from backend.formula_engine.orchestrator import (
    calculate_document,
    compile_query_canvas,
    merge_constants,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================

class FieldDefinitionModel(BaseModel):
    """Mapped input field available to Variable nodes."""
    field_id: str
    name: str
    data_type: DataType = DataType.NUMBER


class ConstantModel(BaseModel):
    """Named constant from the global or query catalog."""
    name: str
    value: Any = None
    data_type: DataType = DataType.NUMBER
    is_global: bool = False


class CompileRequest(BaseModel):
    """Request to compile a formula canvas."""
    canvas: Union[Dict[str, Any], str] = Field(..., description="Canvas export (object or JSON string)")
    fields: Optional[List[FieldDefinitionModel]] = Field(
        None,
        description="Field catalog; when omitted, variable nodes use their own names",
    )
    constants: List[ConstantModel] = Field(default_factory=list)


class DiagnosticModel(BaseModel):
    code: str
    message: str
    output: Optional[str] = None
    node_id: Optional[str] = None
    severity: str = "error"
    details: Dict[str, Any] = Field(default_factory=dict)


class CompiledOutputModel(BaseModel):
    name: str
    output_id: Optional[str] = None
    expression: str
    is_valid: bool
    execution_order: int
    data_type: DataType
    decimal_places: int
    dependencies: Dict[str, List[str]]
    diagnostics: List[DiagnosticModel]


class CompileResponse(BaseModel):
    """Compiled formulas for every output on the canvas."""
    success: bool
    formulas: Dict[str, str]
    errors: List[str]
    outputs: List[CompiledOutputModel]
    diagnostics: List[DiagnosticModel]


class CalculateRequest(BaseModel):
    """Request to calculate a query's outputs for one document."""
    outputs: Optional[List[Dict[str, Any]]] = Field(
        None,
        description="Compiled outputs as returned by /formulas/compile",
    )
    canvas: Optional[Union[Dict[str, Any], str]] = Field(
        None,
        description="Canvas to compile first when compiled outputs are not supplied",
    )
    document_id: Optional[str] = None
    fields: Dict[str, Any] = Field(
        default_factory=dict,
        description="Field name to value, or to {value, confidence, data_type}",
    )
    global_constants: Dict[str, Any] = Field(default_factory=dict)
    local_constants: Dict[str, Any] = Field(default_factory=dict)


class OutputResultModel(BaseModel):
    name: str
    value: Any = None
    formatted_value: Optional[str] = None
    data_type: DataType
    confidence: float
    confidence_level: str
    needs_review: bool = False
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    expression: str
    processed_expression: str
    execution_order: int


class CalculateResponse(BaseModel):
    """Calculated outputs for one document."""
    document_id: Optional[str] = None
    success: bool
    outputs: List[OutputResultModel]


class DocumentPayload(BaseModel):
    document_id: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)


class BatchCalculateRequest(BaseModel):
    """Request to calculate a query's outputs for many documents in the background."""
    outputs: List[Dict[str, Any]]
    documents: List[DocumentPayload]
    global_constants: Dict[str, Any] = Field(default_factory=dict)
    local_constants: Dict[str, Any] = Field(default_factory=dict)


class BatchJobResponse(BaseModel):
    task_id: str
    status: str
    documents: int = 0
    result: Optional[Dict[str, Any]] = None


class OperationModel(BaseModel):
    id: str
    label: str
    inputs: int
    token: str
    style: str
    category: str
    symbol: str
    description: str


# =============================================================================
# Endpoints
# =============================================================================

@router.post(
    "/formulas/compile",
    response_model=CompileResponse,
    summary="Compile formula canvas",
    description="Compile every Output node on a canvas into an expression, with dependencies and execution order.",
)
def compile_formulas(request: CompileRequest) -> Dict[str, Any]:
    """Compile a canvas. Per-output problems are returned as diagnostics, not errors."""
    field_catalog = None
    if request.fields is not None:
        field_catalog = {
            f.field_id: FieldDefinition(field_id=f.field_id, name=f.name, data_type=f.data_type)
            for f in request.fields
        }
    constants = {
        c.name: ConstantDefinition(name=c.name, value=c.value, data_type=c.data_type, is_global=c.is_global)
        for c in request.constants
    }

    compilation = compile_query_canvas(request.canvas, field_catalog=field_catalog, constants=constants)

    logger.info(
        "formulas_compiled",
        outputs=len(compilation.outputs),
        success=compilation.success,
    )
    return compilation.to_dict()


@router.post(
    "/formulas/calculate",
    response_model=CalculateResponse,
    summary="Calculate outputs for a document",
    description="Evaluate compiled outputs (or a canvas) against one document's field values.",
)
def calculate_formulas(request: CalculateRequest) -> Dict[str, Any]:
    """Calculate a document. Failed outputs are reported per output."""
    constants = merge_constants(request.global_constants, request.local_constants)

    if request.outputs is not None:
        outputs = request.outputs
    elif request.canvas is not None:
        outputs = compile_query_canvas(request.canvas, constants=constants).outputs
    else:
        raise ValidationError(
            message="Nothing to calculate",
            errors=[{"field": "outputs", "message": "Provide compiled outputs or a canvas"}],
        )

    try:
        field_values = parse_field_values(request.fields)
        result = calculate_document(outputs, field_values, constants, document_id=request.document_id)
    except (KeyError, ValueError) as e:
        raise ValidationError(
            message="Invalid calculation request",
            errors=[{"field": "outputs", "message": str(e)}],
        ) from e

    return result.to_dict()


@router.post(
    "/formulas/calculate/batch",
    response_model=BatchJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue batch calculation",
    description="Queue a background calculation of compiled outputs for many documents.",
)
def queue_batch_calculation(request: BatchCalculateRequest) -> BatchJobResponse:
    """Submit a batch to the Celery calculation queue."""
    from backend.tasks.calculation_tasks import calculate_documents

    task = calculate_documents.delay(
        request.outputs,
        [document.model_dump() for document in request.documents],
        request.global_constants,
        request.local_constants,
    )
    logger.info("calculation_batch_queued", task_id=task.id, documents=len(request.documents))

    return BatchJobResponse(task_id=task.id, status="queued", documents=len(request.documents))


@router.get(
    "/formulas/jobs/{task_id}",
    response_model=BatchJobResponse,
    summary="Get batch calculation status",
)
def get_batch_status(task_id: str) -> BatchJobResponse:
    """Report the state of a queued batch calculation."""
    task = AsyncResult(task_id, app=celery_app)
    result = task.result if task.successful() else None
    info = task.info if isinstance(task.info, dict) else {}
    return BatchJobResponse(
        task_id=task_id,
        status=task.state.lower(),
        documents=info.get("total", info.get("documents", 0)),
        result=result,
    )


@router.get(
    "/formulas/operations",
    response_model=List[OperationModel],
    summary="List operations",
    description="Operations available to Operation nodes on the canvas.",
)
def list_operations() -> List[Dict[str, Any]]:
    """List every registry operation."""
    return [spec.to_dict() for spec in get_operation_registry().operations()]
