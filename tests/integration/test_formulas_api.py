"""
Integration tests for the formula endpoints.

Tests compile, calculate, batch queueing and the operation list.
"""
from fastapi.testclient import TestClient


class TestCompileEndpoint:
    """Tests for /api/v1/formulas/compile."""

    def test_compile_canvas(self, client: TestClient, tax_canvas):
        """Test every output is compiled and ordered."""
        response = client.post("/api/v1/formulas/compile", json={"canvas": tax_canvas})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["formulas"] == {
            "Tax": "([Input:Price#p1] * 0.15)",
            "Net": "([Input:Price#p1] - Tax)",
        }
        assert [o["name"] for o in data["outputs"]] == ["Tax", "Net"]
        assert data["outputs"][1]["dependencies"]["outputs"] == ["Tax"]
        assert data["outputs"][0]["dependencies"]["global_constants"] == ["TaxRate"]

    def test_compile_with_field_catalog(self, client: TestClient, tax_canvas):
        """Test variable names come from the field catalog."""
        response = client.post(
            "/api/v1/formulas/compile",
            json={"canvas": tax_canvas, "fields": [{"field_id": "p1", "name": "Unit Price"}]},
        )

        assert response.json()["formulas"]["Tax"] == "([Input:Unit Price#p1] * 0.15)"

    def test_compile_reports_diagnostics(self, client: TestClient, tax_canvas):
        """Test per-output problems are returned, not raised."""
        nodes = tax_canvas["drawflow"]["Home"]["data"]
        nodes["3"]["inputs"].pop("input_2")

        response = client.post("/api/v1/formulas/compile", json={"canvas": tax_canvas})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert "Multiply operation is missing connections: input 2" in data["errors"]
        assert data["formulas"] == {"Net": "([Input:Price#p1] - Tax)"}
        net = next(o for o in data["outputs"] if o["name"] == "Net")
        assert net["diagnostics"][0]["code"] == "FRM-404"
        assert net["diagnostics"][0]["severity"] == "warning"

    def test_compile_unreadable_canvas(self, client: TestClient):
        """Test a canvas that is not JSON is rejected."""
        response = client.post("/api/v1/formulas/compile", json={"canvas": "{not json"})

        assert response.status_code == 422
        data = response.json()
        assert data["error"] is True
        assert data["error_code"] == "FRM-100"


class TestCalculateEndpoint:
    """Tests for /api/v1/formulas/calculate."""

    def test_calculate_from_canvas(self, client: TestClient, tax_canvas):
        """Test compiling and calculating in one call."""
        response = client.post(
            "/api/v1/formulas/calculate",
            json={"canvas": tax_canvas, "document_id": "doc-1", "fields": {"Price": 200}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["document_id"] == "doc-1"
        assert data["success"] is True
        values = {o["name"]: o["value"] for o in data["outputs"]}
        assert values == {"Tax": "30", "Net": "170"}

    def test_calculate_compiled_outputs(self, client: TestClient, tax_canvas):
        """Test calculating previously compiled outputs with typed field values."""
        compiled = client.post("/api/v1/formulas/compile", json={"canvas": tax_canvas}).json()

        response = client.post(
            "/api/v1/formulas/calculate",
            json={
                "outputs": compiled["outputs"],
                "fields": {"Price": {"value": "$1,000", "confidence": 0.8, "data_type": "currency"}},
            },
        )

        data = response.json()
        tax, net = data["outputs"]
        assert tax["value"] == "150"
        assert tax["confidence"] == 0.8
        assert tax["confidence_level"] == "medium"
        assert tax["processed_expression"] == "(1000 * 0.15)"
        assert net["value"] == "850"

    def test_failed_output_reported(self, client: TestClient):
        """Test evaluation failures are per output, not HTTP errors."""
        response = client.post(
            "/api/v1/formulas/calculate",
            json={"outputs": [
                {"name": "Ratio", "expression": "(1 / 0)", "execution_order": 1},
                {"name": "Total", "expression": "(1 + 1)", "execution_order": 2},
            ]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        ratio, total = data["outputs"]
        assert ratio["success"] is False
        assert ratio["error_code"] == "FRM-403"
        assert ratio["formatted_value"] is None
        assert total["value"] == "2"

    def test_calculate_needs_outputs_or_canvas(self, client: TestClient):
        """Test an empty request is rejected."""
        response = client.post("/api/v1/formulas/calculate", json={"fields": {"Price": 1}})

        assert response.status_code == 400
        assert response.json()["error_code"] == "FRM-700"

    def test_calculate_malformed_outputs(self, client: TestClient):
        """Test compiled outputs without a name are rejected."""
        response = client.post("/api/v1/formulas/calculate", json={"outputs": [{"expression": "1"}]})

        assert response.status_code == 400
        assert response.json()["error_code"] == "FRM-700"

    def test_calculate_output_decimal_places(self, client: TestClient):
        """Test null decimal places use the default and unreadable ones are rejected."""
        defaulted = client.post(
            "/api/v1/formulas/calculate",
            json={"outputs": [{"name": "Total", "expression": "(1 + 1)", "decimal_places": None}]},
        )
        assert defaulted.status_code == 200
        assert defaulted.json()["outputs"][0]["value"] == "2"

        rejected = client.post(
            "/api/v1/formulas/calculate",
            json={"outputs": [{"name": "Total", "expression": "(1 + 1)", "decimal_places": "two"}]},
        )
        assert rejected.status_code == 400
        assert rejected.json()["error_code"] == "FRM-700"


class TestBatchEndpoints:
    """Tests for batch queueing and status."""

    def test_queue_batch(self, client: TestClient, monkeypatch):
        """Test a batch is handed to the calculation task."""
        queued = {}

        class FakeTask:
            def delay(self, *args):
                queued["args"] = args
                return type("AsyncResult", (), {"id": "task-123"})()

        monkeypatch.setattr("backend.tasks.calculation_tasks.calculate_documents", FakeTask())

        response = client.post(
            "/api/v1/formulas/calculate/batch",
            json={
                "outputs": [{"name": "Total", "expression": "([Input:Amount#a] + 1)", "execution_order": 1}],
                "documents": [
                    {"document_id": "d1", "fields": {"Amount": 1}},
                    {"document_id": "d2", "fields": {"Amount": 2}},
                ],
                "local_constants": {"Fee": "5"},
            },
        )

        assert response.status_code == 202
        assert response.json() == {"task_id": "task-123", "status": "queued", "documents": 2, "result": None}
        outputs, documents, global_constants, local_constants = queued["args"]
        assert [d["document_id"] for d in documents] == ["d1", "d2"]
        assert local_constants == {"Fee": "5"}

    def test_batch_status(self, client: TestClient, monkeypatch):
        """Test the status of a finished batch."""
        summary = {"status": "completed", "documents": 2, "failed_documents": 0, "results": []}

        class FakeResult:
            state = "SUCCESS"
            result = summary
            info = summary

            def __init__(self, task_id, app=None):
                self.task_id = task_id

            def successful(self):
                return True

        monkeypatch.setattr("backend.api.routes.formulas.AsyncResult", FakeResult)

        response = client.get("/api/v1/formulas/jobs/task-123")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["documents"] == 2
        assert data["result"]["failed_documents"] == 0


class TestOperationsEndpoint:
    """Tests for /api/v1/formulas/operations."""

    def test_list_operations(self, client: TestClient):
        """Test the operation table is exposed."""
        response = client.get("/api/v1/formulas/operations")

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 21
        assert data[0]["id"] == "add"
        if_op = next(op for op in data if op["id"] == "if")
        assert if_op["inputs"] == 3
        assert if_op["style"] == "function"
