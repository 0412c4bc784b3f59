"""
Logger Action

Writes a log record at the configured level and echoes it into the node
result, so the message is visible both in service logs and in the run.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from flow_executor.activities.registry import NodeBehavior

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _parse_custom_data(raw: Any) -> Any:
    if raw in (None, ""):
        return None
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


class LoggerAction(NodeBehavior):
    kind = "logger"
    defaults = {"logLevel": "info", "message": "Logger node executed"}

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        if config.get("enabled") in (False, "false"):
            return {"success": True, "logged": False, "message": "Logging disabled"}

        level_name = str(config["logLevel"]).lower()
        message = str(config["message"])
        data = config.get("dataSource")
        custom_data = _parse_custom_data(config.get("customData"))

        logger.log(LOG_LEVELS.get(level_name, logging.INFO), f"[Flow Logger] {message}")

        metadata: dict[str, Any] = {"timestamp": datetime.now(timezone.utc).isoformat()}
        if data is not None:
            metadata["data"] = data
        if custom_data is not None:
            metadata["customData"] = custom_data

        return {
            "success": True,
            "logged": True,
            "level": level_name,
            "message": message,
            "data": data,
            "metadata": metadata,
        }
