"""
Flow Graph

Indexes a FlowDocument for traversal and validates it before execution.
A flow must have exactly one start node, unique node ids, and edges that
reference existing nodes; anything else is rejected before any node runs.
"""

from __future__ import annotations

import logging
from typing import Any

from flow_executor.core.errors import FlowValidationError
from flow_executor.core.types import FlowDocument, FlowEdge, FlowNode

logger = logging.getLogger(__name__)


def _edges_by_source(edges: list[FlowEdge]) -> dict[str, list[FlowEdge]]:
    by_source: dict[str, list[FlowEdge]] = {}
    for e in edges:
        by_source.setdefault(e.source, []).append(e)
    return by_source


def find_problems(document: FlowDocument) -> list[str]:
    """Return every structural problem of a flow document (empty if valid)."""
    problems: list[str] = []

    seen: set[str] = set()
    for node in document.nodes:
        if not node.id.strip():
            problems.append("Node with empty id")
        elif node.id in seen:
            problems.append(f"Duplicate node id: {node.id}")
        seen.add(node.id)

    start_nodes = [n.id for n in document.nodes if n.is_start]
    if not start_nodes:
        problems.append("Flow has no start node")
    elif len(start_nodes) > 1:
        problems.append(f"Flow has {len(start_nodes)} start nodes: {', '.join(start_nodes)}")

    edge_ids: set[str] = set()
    for edge in document.edges:
        if edge.id in edge_ids:
            problems.append(f"Duplicate edge id: {edge.id}")
        edge_ids.add(edge.id)
        if edge.source not in seen:
            problems.append(f"Edge {edge.id} references unknown source node: {edge.source}")
        if edge.target not in seen:
            problems.append(f"Edge {edge.id} references unknown target node: {edge.target}")

    return problems


def validate_flow(document: FlowDocument) -> FlowGraph:
    """
    Validate a flow document and index it for traversal.

    Raises:
        FlowValidationError: If the document is malformed
    """
    problems = find_problems(document)
    if problems:
        logger.error(f"[FlowGraph] Rejected flow: {'; '.join(problems)}")
        raise FlowValidationError(problems)
    return FlowGraph(document)


class FlowGraph:
    """Read-only, indexed view of a validated flow document."""

    def __init__(self, document: FlowDocument):
        self.document = document
        self.nodes: dict[str, FlowNode] = {n.id: n for n in document.nodes}
        self._outgoing = _edges_by_source(document.edges)
        self.start_node = next(n for n in document.nodes if n.is_start)

    def node(self, node_id: str) -> FlowNode:
        return self.nodes[node_id]

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        """Outgoing edges in authored order."""
        return list(self._outgoing.get(node_id, []))

    def untagged_outgoing(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.outgoing(node_id) if not e.branch]

    def tagged_outgoing(self, node_id: str, tag: str) -> list[FlowEdge]:
        return [e for e in self.outgoing(node_id) if e.branch == tag]

    def summary(self) -> dict[str, Any]:
        return {
            "nodes": len(self.nodes),
            "edges": len(self.document.edges),
            "startNodeId": self.start_node.id,
        }
