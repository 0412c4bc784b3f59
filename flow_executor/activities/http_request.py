"""
HTTP Request Action

Sends an outbound HTTP request. Any 2xx status is a success; other statuses
fail the node with the status text as the error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import requests

from flow_executor.activities.registry import NodeBehavior
from flow_executor.core.config import config as engine_config
from flow_executor.core.errors import ActionError

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)


def _parse_headers(raw: Any) -> dict[str, str]:
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        if isinstance(parsed, dict):
            return {str(k): str(v) for k, v in parsed.items()}
    return {}


class HttpRequestAction(NodeBehavior):
    kind = "http-request"
    required_fields = ("url",)
    defaults = {"method": "GET"}

    async def invoke(self, config: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        url = str(config["url"]).strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ActionError(f'HTTP Request failed: Invalid URL format "{url}".')

        method = str(config.get("method") or "GET").upper()
        headers = _parse_headers(config.get("headers"))
        if config.get("apiKey"):
            headers["Authorization"] = f"Bearer {config['apiKey']}"

        body = config.get("body")
        kwargs: dict[str, Any] = {}
        if method != "GET" and body not in (None, ""):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = str(body)

        timeout = float(config.get("timeoutSeconds") or engine_config.HTTP_TIMEOUT_SECONDS)
        logger.info(f"[Action:http-request] {method} {url}")
        start_time = time.time()

        try:
            response = await asyncio.to_thread(
                requests.request, method, url, headers=headers, timeout=timeout, **kwargs
            )
        except requests.Timeout:
            raise ActionError(f"HTTP Request timed out after {timeout:g} seconds")
        except requests.RequestException as e:
            raise ActionError(f"HTTP Request failed: {e}")

        duration_ms = int((time.time() - start_time) * 1000)
        try:
            data = response.json()
        except ValueError:
            data = response.text

        is_success = 200 <= response.status_code < 300
        logger.info(
            f"[Action:http-request] {method} {url} -> {response.status_code} "
            f"(duration_ms={duration_ms})"
        )
        return {
            "success": is_success,
            "status": response.status_code,
            "statusText": response.reason or "",
            "data": data,
            "headers": dict(response.headers),
            "error": None if is_success else (response.reason or f"HTTP {response.status_code}"),
            "durationMs": duration_ms,
        }
