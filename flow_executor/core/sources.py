"""
Variable Source Providers

Simple synchronous `name -> value | None` lookups the variable resolver reads
secrets, flow variables and environment variables from.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)


class VariableSource(Protocol):
    """Anything the resolver can look a name up in."""

    def get(self, name: str) -> Any: ...


class MappingSource:
    """A source backed by a plain mapping."""

    def __init__(self, values: Mapping[str, Any] | None = None, case_insensitive: bool = False):
        self._values = dict(values or {})
        self._case_insensitive = case_insensitive

    def get(self, name: str) -> Any:
        if name in self._values:
            return self._values[name]
        if self._case_insensitive:
            lowered = name.lower()
            for key, value in self._values.items():
                if key.lower() == lowered:
                    return value
        return None

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None


class EnvironmentSource(MappingSource):
    """Explicit environment values, optionally layered over the process environment."""

    def __init__(self, overrides: Mapping[str, Any] | None = None, include_process_env: bool = False):
        values: dict[str, Any] = dict(os.environ) if include_process_env else {}
        values.update(overrides or {})
        super().__init__(values, case_insensitive=True)


class DaprSecretSource:
    """
    Reads secrets one at a time from a Dapr secret store.

    Hits are cached for the lifetime of the source. Any lookup failure is
    logged and treated as an absent secret.
    """

    def __init__(self, store_name: str):
        self.store_name = store_name
        self._cache: dict[str, Any] = {}

    def get(self, name: str) -> Any:
        if name in self._cache:
            return self._cache[name]
        try:
            from dapr.clients import DaprClient

            with DaprClient() as client:
                resp = client.get_secret(store_name=self.store_name, key=name)
            value = (resp.secret or {}).get(name)
        except Exception as e:
            logger.debug(f"[Secrets] Lookup of '{name}' in {self.store_name} failed: {e}")
            return None

        if value is not None:
            self._cache[name] = value
        return value


EMPTY_SOURCE = MappingSource()
