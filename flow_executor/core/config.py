"""
Centralized Configuration Module

Flow executor settings, read from Dapr's Configuration building block when
it is enabled, then from environment variables, then from defaults.

Usage:
    from flow_executor.core.config import config

    max_iterations = config.DEFAULT_MAX_ITERATIONS
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Dapr Configuration store component name
CONFIG_STORE_NAME = os.environ.get("DAPR_CONFIG_STORE", "configstore")

_TRUTHY = ("1", "true", "yes", "on")

# attribute -> (env var, default, type); only FLOW_* keys are read from Dapr
_SETTINGS: dict[str, tuple[str, str, type]] = {
    "PORT": ("PORT", "8080", int),
    "HOST": ("HOST", "0.0.0.0", str),
    "LOG_LEVEL": ("LOG_LEVEL", "INFO", str),
    "DAPR_HOST": ("DAPR_HOST", "localhost", str),
    "DAPR_HTTP_PORT": ("DAPR_HTTP_PORT", "3500", str),
    "PUBSUB_NAME": ("PUBSUB_NAME", "pubsub", str),
    "DAPR_SECRETS_STORE": ("DAPR_SECRETS_STORE", "local-secret-store", str),
    "SECRETS_ENABLED": ("FLOW_SECRETS_ENABLED", "false", bool),
    "EXPOSE_PROCESS_ENV": ("FLOW_EXPOSE_PROCESS_ENV", "false", bool),
    "DEFAULT_MAX_ITERATIONS": ("FLOW_DEFAULT_MAX_ITERATIONS", "500", int),
    "HTTP_TIMEOUT_SECONDS": ("FLOW_HTTP_TIMEOUT_SECONDS", "300", int),
    "MAX_FINISHED_RUNS": ("FLOW_MAX_FINISHED_RUNS", "1000", int),
}

_DAPR_KEYS = [
    "PUBSUB_NAME",
    "DAPR_SECRETS_STORE",
    "SECRETS_ENABLED",
    "EXPOSE_PROCESS_ENV",
    "DEFAULT_MAX_ITERATIONS",
    "HTTP_TIMEOUT_SECONDS",
    "MAX_FINISHED_RUNS",
]


def _coerce(attr: str, raw: str, default: str, kind: type):
    if kind is bool:
        return str(raw).strip().lower() in _TRUTHY
    if kind is int:
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(f"[Config] Invalid integer for {attr}: {raw!r}, using {default}")
            return int(default)
    return raw


@dataclass
class EngineConfig:
    """Centralized configuration for the flow executor."""

    # Server settings
    PORT: int = 8080
    HOST: str = "0.0.0.0"
    LOG_LEVEL: str = "INFO"

    # Dapr sidecar connection
    DAPR_HOST: str = "localhost"
    DAPR_HTTP_PORT: str = "3500"

    # Dapr component names
    PUBSUB_NAME: str = "pubsub"
    DAPR_SECRETS_STORE: str = "local-secret-store"
    SECRETS_ENABLED: bool = False

    # When true, {{env.*}} also sees this process's environment variables
    EXPOSE_PROCESS_ENV: bool = False

    # Engine limits
    DEFAULT_MAX_ITERATIONS: int = 500
    HTTP_TIMEOUT_SECONDS: int = 300
    MAX_FINISHED_RUNS: int = 1000

    _loaded_from_dapr: bool = field(default=False, repr=False)

    def load(self) -> None:
        """Load configuration: Dapr Configuration store (if enabled), then env vars."""
        dapr_values = self._load_from_dapr() if self._dapr_config_enabled() else {}
        for attr, (env_var, default, kind) in _SETTINGS.items():
            raw = dapr_values.get(attr) or os.environ.get(env_var, default)
            setattr(self, attr, _coerce(attr, raw, default, kind))

        logger.info(
            f"[Config] Loaded (dapr={self._loaded_from_dapr}): "
            f"PUBSUB_NAME={self.PUBSUB_NAME}, "
            f"SECRETS_ENABLED={self.SECRETS_ENABLED}, "
            f"EXPOSE_PROCESS_ENV={self.EXPOSE_PROCESS_ENV}, "
            f"DEFAULT_MAX_ITERATIONS={self.DEFAULT_MAX_ITERATIONS}"
        )

    @staticmethod
    def _dapr_config_enabled() -> bool:
        return os.environ.get("DAPR_CONFIG_ENABLED", "").lower() in _TRUTHY

    def _load_from_dapr(self) -> dict[str, str]:
        try:
            from dapr.clients import DaprClient

            with DaprClient() as client:
                resp = client.get_configuration(store_name=CONFIG_STORE_NAME, keys=_DAPR_KEYS)
        except Exception as e:
            logger.debug(f"[Config] Dapr Configuration store unavailable: {e}")
            return {}

        values = {
            key: item.value
            for key, item in (resp.items if resp and resp.items else {}).items()
            if item.value
        }
        if values:
            self._loaded_from_dapr = True
            logger.info(f"[Config] Loaded {len(values)} values from Dapr Configuration store")
        return values


# Singleton instance - loaded once at import time
config = EngineConfig()
config.load()
