"""
Action Registry

The action invoker: a registry of node behaviors keyed by node kind. Each
behavior exposes the same `invoke(config, context)` contract, so new action
kinds plug in without touching the graph executor.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from flow_executor.core.errors import ActionError, UnknownNodeKindError
from flow_executor.core.types import FlowEdge, FlowNode

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext
    from flow_executor.core.graph import FlowGraph

logger = logging.getLogger(__name__)

ActionFunction = Callable[[dict[str, Any], "ExecutionContext"], Awaitable[dict[str, Any]]]


def is_value_missing(value: Any) -> bool:
    return value is None or value == ""


class NodeBehavior:
    """
    Base class for everything a node can do.

    Subclasses set `kind`, optionally `required_fields` and `defaults`, and
    implement `invoke`. Behaviors that resolve their own bindings (condition
    cases are resolved one operand at a time) set `resolve_config = False`.
    """

    kind: str = ""
    required_fields: tuple[str, ...] = ()
    defaults: dict[str, Any] = {}
    resolve_config: bool = True

    def prepare(self, config: dict[str, Any]) -> dict[str, Any]:
        """Apply defaults and check required fields after binding resolution."""
        prepared = dict(config)
        for name, default in self.defaults.items():
            if is_value_missing(prepared.get(name)):
                prepared[name] = default

        missing = [name for name in self.required_fields if is_value_missing(prepared.get(name))]
        if missing:
            raise ActionError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missingFields": missing},
            )
        return prepared

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        raise NotImplementedError

    def select_successors(
        self,
        node: FlowNode,
        result: dict[str, Any],
        graph: FlowGraph,
    ) -> list[FlowEdge]:
        """Ordinary nodes fan out along every untagged outgoing edge."""
        return graph.untagged_outgoing(node.id)


class FunctionAction(NodeBehavior):
    """Adapts a plain async function to the behavior contract."""

    def __init__(self, kind: str, func: ActionFunction, required_fields: tuple[str, ...] = ()):
        self.kind = kind
        self.func = func
        self.required_fields = required_fields

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        return await self.func(config, context)


class ActionRegistry:
    """Maps node kinds to behaviors."""

    def __init__(self):
        self._behaviors: dict[str, NodeBehavior] = {}

    def register(self, behavior: NodeBehavior, *aliases: str) -> NodeBehavior:
        for kind in (behavior.kind, *aliases):
            if not kind:
                raise ValueError("Behavior must declare a kind")
            if kind in self._behaviors:
                logger.info(f"[ActionRegistry] Replacing behavior for kind '{kind}'")
            self._behaviors[kind] = behavior
        return behavior

    def action(self, kind: str, required_fields: tuple[str, ...] = ()):
        """Decorator registering an async function as the behavior for `kind`."""
        def decorator(func: ActionFunction) -> ActionFunction:
            self.register(FunctionAction(kind, func, required_fields))
            return func
        return decorator

    def get(self, kind: str) -> NodeBehavior:
        behavior = self._behaviors.get(kind)
        if behavior is None:
            raise UnknownNodeKindError(kind)
        return behavior

    def kinds(self) -> list[str]:
        return sorted(self._behaviors)

    def __contains__(self, kind: str) -> bool:
        return kind in self._behaviors

    async def invoke(self, kind: str, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        """
        Invoke the behavior registered for `kind` with an already resolved config.

        Raises:
            UnknownNodeKindError: If no behavior is registered for `kind`
            ActionError: If the action fails in an expected way
        """
        behavior = self.get(kind)
        return await behavior.invoke(behavior.prepare(config), context)
