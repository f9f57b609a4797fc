"""
Pytest configuration and fixtures.
"""
from typing import Any, Dict, Generator

import pytest
from fastapi.testclient import TestClient

from backend.config import get_settings
from backend.main import app


@pytest.fixture(scope="function")
def client() -> Generator[TestClient, None, None]:
    """Create a test client for the API."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def tax_canvas() -> Dict[str, Any]:
    """Canvas with Tax = Price * 0.15 and Net = Price - Tax."""
    return {
        "drawflow": {
            "Home": {
                "data": {
                    "1": {"name": "variable", "data": {"variable_id": "p1", "name": "Price"}, "inputs": {}},
                    "2": {"name": "constant", "data": {"value": "0.15", "name": "TaxRate", "scope": "global"},
                          "inputs": {}},
                    "3": {"name": "operation", "data": {"operation_id": "multiply"},
                          "inputs": {"input_1": {"connections": [{"node": "1", "input": "output_1"}]},
                                     "input_2": {"connections": [{"node": "2", "input": "output_1"}]}}},
                    "4": {"name": "output", "data": {"name": "Tax"},
                          "inputs": {"input_1": {"connections": [{"node": "3", "input": "output_1"}]}}},
                    "5": {"name": "operation", "data": {"operation_id": "subtract"},
                          "inputs": {"input_1": {"connections": [{"node": "1", "input": "output_1"}]},
                                     "input_2": {"connections": [{"node": "4", "input": "output_1"}]}}},
                    "6": {"name": "output", "data": {"name": "Net"},
                          "inputs": {"input_1": {"connections": [{"node": "5", "input": "output_1"}]}}},
                }
            }
        }
    }


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset global singleton instances before each test for proper isolation."""
    import backend.formula_engine.canvas_parser as canvas_parser_module
    import backend.formula_engine.operations as operations_module
    import backend.services.numeric_parser as numeric_parser_module

    # Reset before test
    canvas_parser_module._parser_instance = None
    operations_module._registry_instance = None
    numeric_parser_module._parser_instance = None
    get_settings.cache_clear()

    yield

    # Cleanup after test
    canvas_parser_module._parser_instance = None
    operations_module._registry_instance = None
    numeric_parser_module._parser_instance = None
    get_settings.cache_clear()
