"""Flow interpreters for the flow executor."""

from .graph_executor import GraphExecutor

__all__ = ["GraphExecutor"]
