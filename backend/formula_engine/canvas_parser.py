"""
Canvas parser.

Decodes a serialized formula canvas (the node editor's export) into a
FormulaGraph. Each node's variant is decided once here; edges are taken only
from each node's inbound connection lists.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import structlog

from backend.exceptions import CanvasParseError, UnparseableNodeError
from backend.formula_engine.models import (
    CompileDiagnostic,
    ConstantNode,
    DataType,
    Edge,
    FormulaGraph,
    Node,
    NodeKind,
    OperationNode,
    OutputNode,
    VariableNode,
    parse_decimal_places,
)

logger = structlog.get_logger(__name__)

PORT_PATTERN = re.compile(r"(\d+)\s*$")

# Key whose presence identifies a node variant when no explicit type tag is given
VARIANT_KEYS = {
    "variable_id": NodeKind.VARIABLE,
    "constant_id": NodeKind.CONSTANT,
    "operation_id": NodeKind.OPERATION,
    "output_id": NodeKind.OUTPUT,
}


@dataclass
class ParsedCanvas:
    """Graph plus the diagnostics for anything that had to be dropped."""
    graph: FormulaGraph
    diagnostics: List[CompileDiagnostic] = field(default_factory=list)


class CanvasParser:
    """
    Parser for formula canvas documents.

    Accepted shapes:
    - {"nodes": {id: node}}
    - {"drawflow": {"Home": {"data": {id: node}}}} (raw editor export)
    - a JSON string of either of the above

    Each node carries its metadata under "data" and its inbound edges under
    "inputs": {"input_N": {"connections": [{"node": source_id}]}}.
    """

    def parse(self, document: Any) -> ParsedCanvas:
        raw_nodes = self._extract_nodes(document)
        graph = FormulaGraph()
        diagnostics: List[CompileDiagnostic] = []

        for raw_id, raw_node in raw_nodes.items():
            node_id = str(raw_id)
            try:
                node = self._parse_node(node_id, raw_node)
            except UnparseableNodeError as e:
                logger.warning("Dropping unparseable canvas node", node_id=node_id, reason=e.details["reason"])
                diagnostics.append(CompileDiagnostic.from_error(e, node_id=node_id, severity="warning"))
                continue
            graph.nodes[node_id] = node

        for raw_id, raw_node in raw_nodes.items():
            target_id = str(raw_id)
            if target_id not in graph.nodes:
                continue
            for edge in self._parse_inbound(target_id, raw_node, graph, diagnostics):
                graph.add_edge(edge)

        logger.debug(
            "Canvas parsed",
            nodes=len(graph.nodes),
            edges=len(graph.edges),
            dropped=len(diagnostics),
        )
        return ParsedCanvas(graph=graph, diagnostics=diagnostics)

    def _extract_nodes(self, document: Any) -> Mapping[str, Any]:
        if isinstance(document, (str, bytes)):
            try:
                document = json.loads(document or "{}")
            except json.JSONDecodeError as e:
                raise CanvasParseError(f"Canvas is not valid JSON: {e.msg}") from e

        if not isinstance(document, Mapping):
            raise CanvasParseError("Canvas must be a JSON object")

        if "drawflow" in document:
            try:
                nodes = document["drawflow"]["Home"]["data"]
            except (KeyError, TypeError) as e:
                raise CanvasParseError("Canvas export has no Home module") from e
        elif "nodes" in document:
            nodes = document["nodes"]
        else:
            nodes = document

        if nodes is None:
            return {}
        if not isinstance(nodes, Mapping):
            raise CanvasParseError("Canvas nodes must be an object keyed by node id")
        return nodes

    def _parse_node(self, node_id: str, raw: Any) -> Node:
        if not isinstance(raw, Mapping):
            raise UnparseableNodeError(node_id, "node is not an object")

        data = raw.get("data") or {}
        if not isinstance(data, Mapping):
            raise UnparseableNodeError(node_id, "node data is not an object")

        kind = self._resolve_kind(data, raw)
        if kind is None:
            raise UnparseableNodeError(node_id, "no recognizable node type")

        if kind == NodeKind.VARIABLE:
            field_id = _first(data, "variable_id", "field_id")
            if field_id is None:
                raise UnparseableNodeError(node_id, "variable has no field id")
            return VariableNode(
                node_id=node_id,
                field_id=str(field_id),
                name=_text(_first(data, "name", "label")),
            )

        if kind == NodeKind.CONSTANT:
            value = data.get("value")
            scope = str(data.get("scope", "")).lower()
            constant_id = data.get("constant_id")
            return ConstantNode(
                node_id=node_id,
                constant_id=str(constant_id) if constant_id is not None else None,
                name=_text(_first(data, "name", "label")),
                value=None if value is None else str(value).strip(),
                is_global=bool(data.get("is_global", False)) or scope == "global",
            )

        if kind == NodeKind.OPERATION:
            operation_id = _first(data, "operation_id", "op")
            if not operation_id:
                raise UnparseableNodeError(node_id, "operation has no operation id")
            return OperationNode(node_id=node_id, operation_id=str(operation_id))

        name = _text(_first(data, "name", "label"))
        if not name:
            raise UnparseableNodeError(node_id, "output has no name")
        output_id = data.get("output_id")
        try:
            data_type = DataType.parse(data.get("data_type"))
            decimal_places = parse_decimal_places(data.get("decimal_places"))
        except ValueError as e:
            raise UnparseableNodeError(node_id, str(e)) from e
        return OutputNode(
            node_id=node_id,
            name=name,
            output_id=str(output_id) if output_id is not None else None,
            data_type=data_type,
            decimal_places=decimal_places,
        )

    def _resolve_kind(self, data: Mapping[str, Any], raw: Mapping[str, Any]) -> Optional[NodeKind]:
        tag = data.get("type") or raw.get("name")
        if tag:
            try:
                return NodeKind(str(tag).strip().lower())
            except ValueError:
                pass
        for key, kind in VARIANT_KEYS.items():
            if data.get(key) not in (None, ""):
                return kind
        return None

    def _parse_inbound(
        self,
        target_id: str,
        raw: Mapping[str, Any],
        graph: FormulaGraph,
        diagnostics: List[CompileDiagnostic],
    ) -> List[Edge]:
        edges: List[Edge] = []
        occupied: Dict[int, str] = {}
        inputs = raw.get("inputs") or {}
        if not isinstance(inputs, Mapping):
            return edges

        for port_name, port_data in inputs.items():
            port = parse_port(port_name)
            if not isinstance(port_data, Mapping):
                continue
            for connection in port_data.get("connections") or []:
                source = connection.get("node") if isinstance(connection, Mapping) else None
                if source is None:
                    continue
                source_id = str(source)
                if source_id not in graph.nodes:
                    diagnostics.append(CompileDiagnostic(
                        code=UnparseableNodeError.error_code,
                        message=f"Connection from unknown node {source_id} into node {target_id} ignored",
                        node_id=target_id,
                        severity="warning",
                        details={"source_id": source_id, "port": port},
                    ))
                    continue
                if port in occupied:
                    diagnostics.append(CompileDiagnostic(
                        code=UnparseableNodeError.error_code,
                        message=f"Input {port} of node {target_id} already connected to node {occupied[port]}",
                        node_id=target_id,
                        severity="warning",
                        details={"source_id": source_id, "port": port},
                    ))
                    continue
                occupied[port] = source_id
                edges.append(Edge(source_id=source_id, target_id=target_id, target_port=port))

        return edges


def parse_port(port_name: Any) -> int:
    """Map an editor port name like 'input_2' to its number; unnumbered ports are port 1."""
    match = PORT_PATTERN.search(str(port_name))
    if not match:
        return 1
    return int(match.group(1)) or 1


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


# Singleton instance
_parser_instance: Optional[CanvasParser] = None


def get_canvas_parser() -> CanvasParser:
    """Get singleton CanvasParser instance."""
    global _parser_instance
    if _parser_instance is None:
        _parser_instance = CanvasParser()
    return _parser_instance


def parse_canvas(document: Any) -> ParsedCanvas:
    """Parse a canvas document with the default parser."""
    return get_canvas_parser().parse(document)
