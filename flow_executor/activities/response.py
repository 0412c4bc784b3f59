"""
Response Action

Shapes the run's reply. The graph executor captures the result of the last
response node that completes as the run output.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from flow_executor.activities.registry import NodeBehavior

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext


def _maybe_json(value: Any, fallback: Any) -> Any:
    if value in (None, ""):
        return fallback
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


class ResponseAction(NodeBehavior):
    kind = "response"
    defaults = {"contentType": "application/json"}

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        try:
            status_code = int(config.get("statusCode") or 200)
        except (TypeError, ValueError):
            status_code = 200

        headers = _maybe_json(config.get("headers") or config.get("customHeaders"), {})
        if not isinstance(headers, dict):
            headers = {}

        return {
            "success": True,
            "statusCode": status_code,
            "body": _maybe_json(config.get("body"), {}),
            "contentType": config["contentType"],
            "headers": headers,
        }
