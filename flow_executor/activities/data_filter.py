"""
Data Filter Action

Filters an array of records by comparing one field of each record to a value.
The source array comes from `items` directly or from an upstream node's
output field (`sourceNodeId` + `outputField`).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from flow_executor.activities.registry import NodeBehavior
from flow_executor.core.condition_evaluator import OPERATOR_ALIASES, compare
from flow_executor.core.variable_resolver import get_nested_value

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)

# Short operation names accepted alongside the condition operator names
FILTER_OPERATIONS = {
    "eq": "equals",
    "neq": "notEquals",
    "gt": "greaterThan",
    "lt": "lessThan",
    "gte": "greaterOrEqual",
    "lte": "lessOrEqual",
    "contains": "contains",
    "not_contains": "notContains",
}


class DataFilterAction(NodeBehavior):
    kind = "data-filter"
    defaults = {"filterOperation": "eq"}

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        if "items" in config:
            data = config["items"]
        else:
            data = get_nested_value(
                context.results.get(config.get("sourceNodeId") or ""),
                config.get("outputField") or "",
            )

        if not isinstance(data, list):
            logger.warning("[Action:data-filter] Source is not an array, passing it through")
            return {"success": True, "filtered": data, "count": 0}

        field_name = config.get("filterField")
        filter_value = config.get("filterValue")
        filtered = list(data)
        if field_name and filter_value not in (None, ""):
            operation = str(config["filterOperation"])
            operator = FILTER_OPERATIONS.get(operation, OPERATOR_ALIASES.get(operation, operation))
            filtered = [
                item for item in filtered
                if compare(get_nested_value(item, field_name), operator, filter_value)
            ]

        return {"success": True, "filtered": filtered, "count": len(filtered)}
