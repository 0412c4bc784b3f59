"""
Start Action

The entry point of a flow: emits the run's trigger payload so downstream
nodes can bind to it as `{{startNodeId.field}}`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from flow_executor.activities.registry import NodeBehavior

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext


class StartAction(NodeBehavior):
    kind = "start"

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        payload = context.journal.trigger_data
        output: dict[str, Any] = {}
        # Static defaults authored on the start node, overridden by the payload
        output.update(config.get("defaults") or {})
        if isinstance(payload, dict):
            output.update(payload)
        output["payload"] = payload
        output["success"] = True
        return output
