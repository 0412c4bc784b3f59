"""Core types and utilities for the flow executor."""

from .types import (
    FailurePolicy,
    FlowDocument,
    FlowEdge,
    FlowNode,
    NodeKind,
    NodeState,
    RunOutcome,
    RunStatus,
)
from .errors import (
    ActionError,
    FlowEngineError,
    FlowValidationError,
)
from .context import ExecutionContext, RunJournal
from .graph import FlowGraph, validate_flow
from .variable_resolver import resolve_value, contains_bindings

__all__ = [
    "FailurePolicy",
    "FlowDocument",
    "FlowEdge",
    "FlowNode",
    "NodeKind",
    "NodeState",
    "RunOutcome",
    "RunStatus",
    "ActionError",
    "FlowEngineError",
    "FlowValidationError",
    "ExecutionContext",
    "RunJournal",
    "FlowGraph",
    "validate_flow",
    "resolve_value",
    "contains_bindings",
]
