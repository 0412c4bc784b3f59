from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from flow_executor.activities.registry import NodeBehavior
from flow_executor.core.errors import ActionError

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext


def _try_parse_json(value: Any) -> Any:
    """Best-effort parse JSON strings into Python objects; otherwise return as-is."""
    if not isinstance(value, str):
        return value
    s = value.strip()
    if not s:
        return value
    if not ((s.startswith("{") and s.endswith("}")) or (s.startswith("[") and s.endswith("]"))):
        return value
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        return value


def _coerce_entries(entries_raw: Any) -> list[dict[str, Any]]:
    parsed = _try_parse_json(entries_raw)
    if isinstance(parsed, dict):
        return [{"key": key, "value": value} for key, value in parsed.items()]
    if isinstance(parsed, list):
        return [item for item in parsed if isinstance(item, dict)]
    raise ActionError('entries must resolve to an array of {"key","value"} objects')


def resolve_variable_updates(config: dict[str, Any]) -> dict[str, Any]:
    """
    Turn an already resolved set-variable config into key/value assignments.

    Supported config formats:
      - Single assignment: {"variableName": "...", "value": ...}
      - Multi assignment: {"entries": [{"key": "...", "value": ...}, ...]}
      - Multi assignment (object map): {"entries": {"k1": "...", "k2": "..."}}
    """
    entries_raw = config.get("entries")
    if entries_raw is None:
        entries = [{
            "key": config.get("variableName") or config.get("key") or "value",
            "value": config.get("value"),
        }]
    else:
        entries = _coerce_entries(entries_raw)

    if len(entries) == 0:
        raise ActionError("at least one key/value entry is required")

    updates: dict[str, Any] = {}
    for index, entry in enumerate(entries):
        key = str(entry.get("key") or "").strip()
        if not key:
            raise ActionError(f"entry {index + 1} is missing key")
        updates[key] = _try_parse_json(entry.get("value"))
    return updates


class SetVariableAction(NodeBehavior):
    kind = "set-variable"

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        updates = resolve_variable_updates(config)
        return {**updates, "variables": updates, "success": True}
