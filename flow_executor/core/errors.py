"""
Error taxonomy for the flow executor.

Only FlowValidationError is fatal to a run; every other error is mapped to a
node result (`success: false`) by the graph executor.
"""

from __future__ import annotations


class FlowEngineError(Exception):
    """Base class for flow executor errors."""


class FlowValidationError(FlowEngineError):
    """The flow graph is malformed and must not be executed."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Invalid flow: " + "; ".join(self.problems))


class ActionError(FlowEngineError):
    """An action failed in an expected, explainable way."""

    def __init__(self, message: str, details: dict | None = None):
        self.details = details or {}
        super().__init__(message)


class ConditionEvaluationError(ActionError):
    """A free-form condition expression could not be evaluated."""


class LoopConfigurationError(ActionError):
    """A loop node has no usable data source."""


class UnknownNodeKindError(ActionError):
    """No behavior is registered for a node kind."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unknown node kind: {kind}")
