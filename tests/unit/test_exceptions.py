"""
Unit tests for custom exceptions.

Tests exception hierarchy, error codes and message formatting.
"""
import pytest

from backend.exceptions import (
    ArithmeticFault,
    CanvasParseError,
    CircularReferenceError,
    CompileError,
    EvaluationError,
    ExpressionSyntaxError,
    ExpressionTooDeepError,
    FormulaEngineError,
    InvalidNameError,
    MissingConnectionError,
    MissingFieldValueError,
    OutputCycleError,
    OutputNotConnectedError,
    PropagatedFailure,
    UnknownReferenceError,
    UnparseableNodeError,
    ValidationError,
)


class TestExceptionHierarchy:
    """Tests for exception class hierarchy."""

    def test_base_exception(self):
        """Test base FormulaEngineError."""
        exc = FormulaEngineError("Test error")

        assert exc.error_code == "FRM-000"
        assert exc.message == "Test error"
        assert exc.http_status == 500

    def test_canvas_errors(self):
        """Test canvas errors."""
        assert CanvasParseError().error_code == "FRM-100"
        assert CanvasParseError().http_status == 422

        exc = UnparseableNodeError("n7", "no recognizable node type")
        assert exc.error_code == "FRM-101"
        assert exc.details == {"node_id": "n7", "reason": "no recognizable node type"}

    def test_compile_errors(self):
        """Test compile errors share a base class."""
        for exc in (OutputNotConnectedError("Total"), MissingConnectionError("IF", [3]), CircularReferenceError("n1")):
            assert isinstance(exc, CompileError)
            assert exc.error_code.startswith("FRM-2")

    def test_evaluation_errors(self):
        """Test evaluation errors share a base class."""
        for exc in (MissingFieldValueError("Amount"), ArithmeticFault(), PropagatedFailure("Tax")):
            assert isinstance(exc, EvaluationError)
            assert exc.error_code.startswith("FRM-4")


class TestMessages:
    """Tests for user-facing messages."""

    def test_missing_connection(self):
        """Test missing inputs are listed by port."""
        exc = MissingConnectionError("IF", [3])

        assert exc.message == "IF operation is missing connections: input 3"
        assert exc.details["missing_ports"] == [3]

    def test_output_not_connected(self):
        """Test unconnected output message."""
        assert OutputNotConnectedError("Total").message == 'Output "Total" is not connected to any input'

    def test_output_cycle(self):
        """Test cycles are rendered as closed paths."""
        exc = OutputCycleError(cycles=[["A", "B"]], blocked=["C"])

        assert exc.message == "Circular dependency between outputs: A -> B -> A"
        assert exc.affected_outputs == ["A", "B", "C"]
        assert exc.details == {"cycles": [["A", "B"]], "blocked": ["C"]}

    def test_unknown_reference_kind(self):
        """Test the kind of unknown reference is named."""
        exc = UnknownReferenceError("FOO", kind="function")

        assert exc.message == "Unknown function 'FOO'"
        assert exc.error_code == "FRM-405"

    def test_syntax_error_position(self):
        """Test the failing position is kept in details."""
        exc = ExpressionSyntaxError("Expected ')'", position=4)

        assert exc.error_code == "FRM-407"
        assert exc.details == {"position": 4}

    def test_invalid_name(self):
        """Test names that cannot be bracketed are quoted back."""
        exc = InvalidNameError("Price [USD]")

        assert isinstance(exc, CompileError)
        assert exc.error_code == "FRM-208"
        assert exc.message == "Name 'Price [USD]' cannot contain ']'"

    def test_expression_too_deep(self):
        """Test the output is named when known."""
        assert ExpressionTooDeepError().message == "Formula nests too deeply to evaluate"

        exc = ExpressionTooDeepError("Deep")
        assert isinstance(exc, EvaluationError)
        assert exc.error_code == "FRM-408"
        assert exc.message == "Formula for 'Deep' nests too deeply to evaluate"


class TestValidationError:
    """Tests for ValidationError."""

    def test_validation_error_basic(self):
        """Test basic ValidationError."""
        exc = ValidationError("Invalid input")

        assert isinstance(exc, FormulaEngineError)
        assert exc.error_code == "FRM-700"
        assert exc.http_status == 400
        assert exc.details["errors"] == []

    def test_validation_error_with_errors(self):
        """Test ValidationError with field errors."""
        exc = ValidationError(
            message="Validation failed",
            errors=[{"field": "outputs", "message": "Provide compiled outputs or a canvas"}],
        )

        assert len(exc.details["errors"]) == 1


class TestExceptionDetails:
    """Tests for exception details handling."""

    def test_to_dict(self):
        """Test the API error body."""
        data = PropagatedFailure("Tax").to_dict()

        assert data == {
            "error": True,
            "error_code": "FRM-404",
            "message": "Depends on failed output 'Tax'",
            "details": {"dependency": "Tax"},
        }

    def test_error_code_override(self):
        """Test the error code can be overridden per instance."""
        exc = EvaluationError("Custom", error_code="FRM-499")

        assert exc.error_code == "FRM-499"
        assert EvaluationError.error_code == "FRM-400"

    def test_exception_can_be_raised(self):
        """Test that exceptions can be raised and caught."""
        with pytest.raises(FormulaEngineError) as exc_info:
            raise ArithmeticFault("Division by zero")

        assert exc_info.value.error_code == "FRM-403"
