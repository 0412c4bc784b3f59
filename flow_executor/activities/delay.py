"""
Delay Action

Suspends the branch cooperatively for a configured duration.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from flow_executor.activities.registry import NodeBehavior
from flow_executor.core.errors import ActionError

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)


def get_duration_ms(config: dict[str, Any]) -> int:
    """Get the delay in milliseconds from various config formats."""
    try:
        if config.get("durationMs") not in (None, ""):
            return int(float(config["durationMs"]))
        if config.get("durationSeconds") not in (None, ""):
            return int(float(config["durationSeconds"]) * 1000)
        if config.get("durationMinutes") not in (None, ""):
            return int(float(config["durationMinutes"]) * 60_000)
    except (TypeError, ValueError):
        raise ActionError("Delay duration must be a number")
    return 0


class DelayAction(NodeBehavior):
    kind = "delay"

    def __init__(self, sleep=asyncio.sleep):
        self._sleep = sleep

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        duration_ms = get_duration_ms(config)
        if duration_ms < 0:
            raise ActionError("Delay duration must not be negative")
        logger.info(f"[Action:delay] Waiting {duration_ms}ms")
        if duration_ms:
            await self._sleep(duration_ms / 1000)
        return {"success": True, "delayedMs": duration_ms}
