"""
Formula calculation background tasks.

Evaluates one query's compiled outputs against a batch of processed
documents. Documents are independent: a failure in one never stops the rest.
"""
from typing import Any, Dict, List, Optional

import structlog
from celery.exceptions import SoftTimeLimitExceeded

from backend.celery_app import celery_app
from backend.config import get_settings
from backend.exceptions import FormulaEngineError
from backend.formula_engine.models import parse_field_values
from backend.formula_engine.orchestrator import calculate_document, merge_constants
from backend.middleware.logging import set_correlation_id

logger = structlog.get_logger(__name__)


def update_batch_progress(task: Any, processed: int, total: int) -> None:
    """Publish batch progress when running under a worker."""
    if not task.request.id:
        return
    task.update_state(
        state="PROGRESS",
        meta={"processed": processed, "total": total, "progress": round(processed / total, 4) if total else 1.0},
    )


@celery_app.task(bind=True)
def calculate_documents(
    self,
    compiled_outputs: List[Dict[str, Any]],
    documents: List[Dict[str, Any]],
    global_constants: Optional[Dict[str, Any]] = None,
    local_constants: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Calculate every output of a query for a batch of documents.

    Args:
        compiled_outputs: Persisted CompiledOutput dicts for one query.
        documents: [{"document_id": ..., "fields": {name: value | {"value", "confidence", "data_type"}}}]
        global_constants: Constant name to value, shared by all queries.
        local_constants: Constant name to value for this query; shadows globals.

    Returns:
        Dict with per-document results and batch totals.
    """
    set_correlation_id(self.request.id)
    settings = get_settings()
    constants = merge_constants(global_constants, local_constants)
    total = len(documents)
    results: List[Dict[str, Any]] = []
    failed_documents = 0

    logger.info("calculation_batch_started", documents=total, outputs=len(compiled_outputs))

    try:
        for index, document in enumerate(documents, start=1):
            document_id = document.get("document_id")
            try:
                evaluation = calculate_document(
                    compiled_outputs,
                    parse_field_values(document.get("fields") or {}),
                    constants,
                    document_id=document_id,
                    settings=settings,
                )
                results.append(evaluation.to_dict())
            except (FormulaEngineError, ValueError) as e:
                # Malformed compiled outputs or payloads fail this document only
                failed_documents += 1
                error = e.to_dict() if isinstance(e, FormulaEngineError) else {"error": True, "message": str(e)}
                logger.error("document_calculation_failed", document_id=document_id, error=str(e))
                results.append({"document_id": document_id, "success": False, "error": error, "outputs": []})

            if index % settings.batch_chunk_size == 0:
                update_batch_progress(self, index, total)

    except SoftTimeLimitExceeded:
        logger.warning("calculation_batch_time_limit", processed=len(results), documents=total)
        raise

    logger.info(
        "calculation_batch_completed",
        documents=total,
        failed_documents=failed_documents,
    )
    return {
        "status": "completed",
        "documents": total,
        "failed_documents": failed_documents,
        "results": results,
    }
