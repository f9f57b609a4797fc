"""
Custom exceptions for the formula engine.

Provides a hierarchy of exceptions with error codes for consistent error handling.
"""
from typing import Optional, Dict, Any, List


class FormulaEngineError(Exception):
    """
    Base exception for all formula engine errors.

    Attributes:
        error_code: Unique error code (e.g., FRM-001)
        message: Human-readable error message
        details: Additional error context
    """
    error_code: str = "FRM-000"
    http_status: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# Canvas Errors (FRM-1XX)
class CanvasParseError(FormulaEngineError):
    """Canvas document cannot be read at all."""
    error_code = "FRM-100"
    http_status = 422

    def __init__(self, message: str = "Failed to parse formula canvas", **kwargs):
        super().__init__(message, **kwargs)


class UnparseableNodeError(FormulaEngineError):
    """A single canvas node does not match any known node type."""
    error_code = "FRM-101"
    http_status = 422

    def __init__(self, node_id: str, reason: str = "unknown node type", **kwargs):
        message = f"Node {node_id} could not be parsed: {reason}"
        super().__init__(message, details={"node_id": node_id, "reason": reason}, **kwargs)


# Compile Errors (FRM-2XX)
class CompileError(FormulaEngineError):
    """Error while compiling a formula graph."""
    error_code = "FRM-200"
    http_status = 422

    def __init__(self, message: str = "Failed to compile formula", **kwargs):
        super().__init__(message, **kwargs)


class OutputNotConnectedError(CompileError):
    """Output node has nothing wired into its input."""
    error_code = "FRM-201"

    def __init__(self, output_name: str, **kwargs):
        message = f'Output "{output_name}" is not connected to any input'
        super().__init__(message, details={"output": output_name}, **kwargs)


class MissingConnectionError(CompileError):
    """Operation node is missing one or more required inputs."""
    error_code = "FRM-202"

    def __init__(self, operation_label: str, missing_ports: List[int], **kwargs):
        ports = ", ".join(f"input {port}" for port in missing_ports)
        message = f"{operation_label} operation is missing connections: {ports}"
        super().__init__(
            message,
            details={"operation": operation_label, "missing_ports": list(missing_ports)},
            **kwargs,
        )


class CircularReferenceError(CompileError):
    """A node was re-entered while it was still being compiled."""
    error_code = "FRM-203"

    def __init__(self, node_id: str, **kwargs):
        message = f"Circular dependency at {node_id}"
        super().__init__(message, details={"node_id": node_id}, **kwargs)


class UnresolvedVariableError(CompileError):
    """Variable references a field that is not in the field catalog."""
    error_code = "FRM-204"

    def __init__(self, field_id: str, **kwargs):
        message = f"Input field {field_id} is not in the field catalog"
        super().__init__(message, details={"field_id": field_id}, **kwargs)


class UnknownOperationError(CompileError):
    """Operation id is not in the operation registry."""
    error_code = "FRM-205"

    def __init__(self, operation_id: str, **kwargs):
        message = f"Unknown operation '{operation_id}'"
        super().__init__(message, details={"operation_id": operation_id}, **kwargs)


class GraphTooDeepError(CompileError):
    """Formula graph nests deeper than the configured limit."""
    error_code = "FRM-206"

    def __init__(self, max_depth: int, **kwargs):
        message = f"Formula graph exceeds maximum depth of {max_depth}"
        super().__init__(message, details={"max_depth": max_depth}, **kwargs)


class DuplicateOutputError(CompileError):
    """Two Output nodes on one canvas share a name."""
    error_code = "FRM-207"

    def __init__(self, output_name: str, **kwargs):
        message = f'Output "{output_name}" is defined more than once'
        super().__init__(message, details={"output": output_name}, **kwargs)


class InvalidNameError(CompileError):
    """Name cannot be written as a bracketed reference."""
    error_code = "FRM-208"

    def __init__(self, name: str, **kwargs):
        message = f"Name '{name}' cannot contain ']'"
        super().__init__(message, details={"name": name}, **kwargs)


# Ordering Errors (FRM-3XX)
class OutputCycleError(FormulaEngineError):
    """Outputs reference each other in a cycle."""
    error_code = "FRM-300"
    http_status = 422

    def __init__(self, cycles: List[List[str]], blocked: Optional[List[str]] = None, **kwargs):
        self.cycles = [list(cycle) for cycle in cycles]
        self.blocked = list(blocked or [])
        rendered = "; ".join(" -> ".join(cycle + cycle[:1]) for cycle in self.cycles)
        message = f"Circular dependency between outputs: {rendered}"
        super().__init__(
            message,
            details={"cycles": self.cycles, "blocked": self.blocked},
            **kwargs,
        )

    @property
    def affected_outputs(self) -> List[str]:
        """All outputs that cannot be ordered, cycle members first."""
        names = [name for cycle in self.cycles for name in cycle]
        return names + [name for name in self.blocked if name not in names]


# Evaluation Errors (FRM-4XX)
class EvaluationError(FormulaEngineError):
    """Error while evaluating one output for one document."""
    error_code = "FRM-400"
    http_status = 422

    def __init__(self, message: str = "Failed to evaluate formula", **kwargs):
        super().__init__(message, **kwargs)


class MissingFieldValueError(EvaluationError):
    """No value was supplied for a referenced input field."""
    error_code = "FRM-401"

    def __init__(self, field_name: str, **kwargs):
        message = f"No value for input field '{field_name}'"
        super().__init__(message, details={"field": field_name}, **kwargs)


class TypeMismatchError(EvaluationError):
    """Operand types do not fit the operator."""
    error_code = "FRM-402"

    def __init__(self, message: str = "Type mismatch", **kwargs):
        super().__init__(message, **kwargs)


class ArithmeticFault(EvaluationError):
    """Arithmetic is undefined for the operands (e.g. divide by zero)."""
    error_code = "FRM-403"

    def __init__(self, message: str = "Arithmetic error", **kwargs):
        super().__init__(message, **kwargs)


class PropagatedFailure(EvaluationError):
    """A depended-upon output failed, so this one cannot be computed."""
    error_code = "FRM-404"

    def __init__(self, dependency: str, **kwargs):
        message = f"Depends on failed output '{dependency}'"
        super().__init__(message, details={"dependency": dependency}, **kwargs)


class UnknownReferenceError(EvaluationError):
    """Expression references a name or function that cannot be resolved."""
    error_code = "FRM-405"

    def __init__(self, name: str, kind: str = "reference", **kwargs):
        message = f"Unknown {kind} '{name}'"
        super().__init__(message, details={"name": name, "kind": kind}, **kwargs)


class InvalidExpressionError(EvaluationError):
    """Output was compiled as invalid and has nothing to evaluate."""
    error_code = "FRM-406"

    def __init__(self, output_name: str, **kwargs):
        message = f"Output '{output_name}' has no valid formula"
        super().__init__(message, details={"output": output_name}, **kwargs)


class ExpressionSyntaxError(EvaluationError):
    """Expression string does not follow the formula grammar."""
    error_code = "FRM-407"

    def __init__(self, message: str = "Invalid formula syntax", position: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        if position is not None:
            details["position"] = position
        super().__init__(message, details=details, **kwargs)


class ExpressionTooDeepError(EvaluationError):
    """Expression nests deeper than the interpreter can walk."""
    error_code = "FRM-408"

    def __init__(self, output_name: Optional[str] = None, **kwargs):
        message = "Formula nests too deeply to evaluate"
        if output_name:
            message = f"Formula for '{output_name}' nests too deeply to evaluate"
        super().__init__(message, details={"output": output_name}, **kwargs)


# Validation Errors (FRM-7XX)
class ValidationError(FormulaEngineError):
    """Input validation failed."""
    error_code = "FRM-700"
    http_status = 400

    def __init__(self, message: str = "Validation failed", errors: list = None, **kwargs):
        details = kwargs.pop("details", {})
        details["errors"] = errors or []
        super().__init__(message, details=details, **kwargs)
