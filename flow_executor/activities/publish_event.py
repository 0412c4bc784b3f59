"""
Publish Event Action

Publishes a CloudEvent-style payload to Dapr pub/sub from inside a flow.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from dapr.clients import DaprClient

from flow_executor.activities.registry import NodeBehavior
from flow_executor.core.config import config as engine_config

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)

FLOW_EVENTS_TOPIC = "flow.events"


def _publish(pubsub_name: str, topic: str, payload: dict[str, Any]) -> None:
    with DaprClient() as client:
        client.publish_event(
            pubsub_name=pubsub_name,
            topic_name=topic,
            data=json.dumps(payload),
            data_content_type="application/json",
        )


class PublishEventAction(NodeBehavior):
    kind = "publish-event"
    defaults = {"topic": FLOW_EVENTS_TOPIC, "eventType": "custom"}

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        topic = str(config["topic"])
        event_type = str(config["eventType"])
        pubsub_name = config.get("pubsubName") or engine_config.PUBSUB_NAME

        logger.info(f"[Publish Event] Publishing {event_type} to topic: {topic}")

        event_payload = {
            "type": event_type,
            "source": "flow-executor",
            "data": config.get("data") or {},
            "time": datetime.now(timezone.utc).isoformat(),
            "specversion": "1.0",
            "datacontenttype": "application/json",
            "runid": context.journal.run_id,
            **(config.get("metadata") or {}),
        }

        try:
            await asyncio.to_thread(_publish, pubsub_name, topic, event_payload)
        except Exception as e:
            logger.error(f"[Publish Event] Failed to publish {event_type} to {topic}: {e}")
            return {
                "success": False,
                "topic": topic,
                "eventType": event_type,
                "error": f"Failed to publish event: {e}",
            }

        logger.info(f"[Publish Event] Successfully published {event_type} to {topic}")
        return {"success": True, "topic": topic, "eventType": event_type}
