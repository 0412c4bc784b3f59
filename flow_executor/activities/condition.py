"""
Condition Action

Evaluates a condition node and routes to exactly one tagged successor edge.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from flow_executor.activities.registry import NodeBehavior
from flow_executor.core.condition_evaluator import (
    ConditionOutcome,
    evaluate_cases,
    evaluate_custom_expression,
)
from flow_executor.core.errors import ActionError
from flow_executor.core.types import BRANCH_ELSE, BRANCH_FALSE, ConditionCase, FlowEdge, FlowNode

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext
    from flow_executor.core.graph import FlowGraph

logger = logging.getLogger(__name__)

# Result key carrying the ordered branch tags for successor selection
BRANCH_TAGS_KEY = "_branchTags"


def parse_cases(raw: Any) -> list[ConditionCase]:
    """Cases may be stored as a list or as a JSON string."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw or "[]")
        except json.JSONDecodeError:
            raise ActionError("Invalid cases configuration")
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ActionError("Invalid cases configuration")
    try:
        return [ConditionCase.model_validate(c) for c in raw]
    except ValidationError as e:
        raise ActionError(f"Invalid cases configuration: {e.error_count()} error(s)")


class ConditionAction(NodeBehavior):
    """
    Case-list mode (`multipleConditions` or a non-empty `cases` list) or
    expression mode (`useCustomExpression` / `condition`).
    """

    kind = "condition"
    resolve_config = False

    def evaluate(self, config: dict[str, Any], context: ExecutionContext) -> ConditionOutcome:
        cases_raw = config.get("cases")
        use_cases = bool(config.get("multipleConditions")) or (
            isinstance(cases_raw, list) and len(cases_raw) > 0
        )

        if config.get("useCustomExpression") or not use_cases:
            return evaluate_custom_expression(
                config.get("condition") or config.get("expression") or "",
                context,
                description=config.get("description"),
            )

        cases = parse_cases(cases_raw)
        if not cases:
            raise ActionError("At least one condition case is required")
        return evaluate_cases(cases, str(config.get("returnType") or "boolean"), context)

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        outcome = self.evaluate(config, context)
        logger.info(
            f"[Condition] matchedCase={outcome.matched_case_id or BRANCH_ELSE} "
            f"returnValue={outcome.return_value!r}"
        )
        output = outcome.to_output()
        output[BRANCH_TAGS_KEY] = outcome.branch_tags()
        return output

    def select_successors(
        self,
        node: FlowNode,
        result: dict[str, Any],
        graph: FlowGraph,
    ) -> list[FlowEdge]:
        """Follow only the first edge tagged with the first tag that has one."""
        for tag in result.get(BRANCH_TAGS_KEY) or [BRANCH_FALSE, BRANCH_ELSE]:
            edges = graph.tagged_outgoing(node.id, tag)
            if edges:
                return [edges[0]]
        logger.info(f"[Condition] {node.id}: no edge for branch, branch ends here")
        return []
