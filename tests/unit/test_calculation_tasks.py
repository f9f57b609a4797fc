"""
Unit tests for the batch calculation task.

The task is called directly (no broker), which runs it eagerly in-process.
"""
from types import SimpleNamespace
from unittest.mock import MagicMock

from backend.tasks.calculation_tasks import calculate_documents, update_batch_progress


OUTPUTS = [
    {"name": "Tax", "expression": "([Input:Price#p1] * Rate)", "execution_order": 1},
    {"name": "Net", "expression": "([Input:Price#p1] - Tax)", "execution_order": 2,
     "dependencies": {"outputs": ["Tax"]}},
]


class TestCalculateDocuments:
    """Tests for calculate_documents."""

    def test_batch_results(self):
        """Test every document is calculated with merged constants."""
        summary = calculate_documents(
            OUTPUTS,
            [
                {"document_id": "d1", "fields": {"Price": 200}},
                {"document_id": "d2", "fields": {"Price": {"value": "100", "confidence": 0.6}}},
            ],
            global_constants={"Rate": "0.1"},
            local_constants={"Rate": "0.15"},
        )

        assert summary["status"] == "completed"
        assert summary["documents"] == 2
        assert summary["failed_documents"] == 0
        d1, d2 = summary["results"]
        assert [o["value"] for o in d1["outputs"]] == ["30", "170"]
        assert d2["document_id"] == "d2"
        assert [o["value"] for o in d2["outputs"]] == ["15", "85"]
        assert d2["outputs"][1]["confidence"] == 0.6

    def test_output_failure_does_not_fail_document(self):
        """Test a missing field fails outputs, not the batch."""
        summary = calculate_documents(OUTPUTS, [{"document_id": "d1", "fields": {}}], {"Rate": "0.15"})

        assert summary["failed_documents"] == 0
        result = summary["results"][0]
        assert result["success"] is False
        assert [o["error_code"] for o in result["outputs"]] == ["FRM-401", "FRM-404"]

    def test_malformed_document_is_isolated(self):
        """Test a bad payload fails only its own document."""
        summary = calculate_documents(
            OUTPUTS,
            [
                {"document_id": "bad", "fields": {"Price": {"value": "1", "data_type": "colour"}}},
                {"document_id": "good", "fields": {"Price": 10}},
            ],
            {"Rate": "0.5"},
        )

        assert summary["failed_documents"] == 1
        bad, good = summary["results"]
        assert bad["success"] is False
        assert "colour" in bad["error"]["message"]
        assert good["success"] is True

    def test_empty_batch(self):
        """Test a batch with no documents."""
        summary = calculate_documents(OUTPUTS, [])

        assert summary == {"status": "completed", "documents": 0, "failed_documents": 0, "results": []}


class TestBatchProgress:
    """Tests for progress publishing."""

    def test_progress_published_under_worker(self):
        """Test progress is reported when the task has an id."""
        task = SimpleNamespace(request=SimpleNamespace(id="task-1"), update_state=MagicMock())

        update_batch_progress(task, 50, 200)

        task.update_state.assert_called_once_with(
            state="PROGRESS",
            meta={"processed": 50, "total": 200, "progress": 0.25},
        )

    def test_progress_skipped_when_called_directly(self):
        """Test no state is published outside a worker."""
        task = SimpleNamespace(request=SimpleNamespace(id=None), update_state=MagicMock())

        update_batch_progress(task, 1, 1)

        task.update_state.assert_not_called()
