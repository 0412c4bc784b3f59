from __future__ import annotations

import dapr.clients

from flow_executor.core.config import EngineConfig
from flow_executor.core.sources import DaprSecretSource, EnvironmentSource, MappingSource


class _FakeSecretResponse:
    def __init__(self, secret):
        self.secret = secret


class _FakeDaprClient:
    calls = 0

    def __init__(self, *args, **kwargs):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def get_secret(self, store_name, key):
        _FakeDaprClient.calls += 1
        if key == "MISSING":
            raise RuntimeError("not found")
        return _FakeSecretResponse({key: f"{store_name}:{key}"})


def test_mapping_source():
    source = MappingSource({"Name": "value"})
    assert source.get("Name") == "value"
    assert source.get("name") is None
    assert "Name" in source

    insensitive = MappingSource({"Name": "value"}, case_insensitive=True)
    assert insensitive.get("NAME") == "value"


def test_environment_source_layers_overrides(monkeypatch):
    monkeypatch.setenv("FLOW_TEST_REGION", "us-east-1")
    source = EnvironmentSource({"flow_test_stage": "dev"}, include_process_env=True)
    assert source.get("FLOW_TEST_REGION") == "us-east-1"
    assert source.get("FLOW_TEST_STAGE") == "dev"

    isolated = EnvironmentSource({"A": "1"})
    assert isolated.get("FLOW_TEST_REGION") is None


def test_dapr_secret_source_caches_and_swallows_lookup_errors(monkeypatch):
    monkeypatch.setattr(dapr.clients, "DaprClient", _FakeDaprClient)
    _FakeDaprClient.calls = 0
    source = DaprSecretSource("vault")

    assert source.get("API_KEY") == "vault:API_KEY"
    assert source.get("API_KEY") == "vault:API_KEY"
    assert _FakeDaprClient.calls == 1
    assert source.get("MISSING") is None


def test_engine_config_reads_environment(monkeypatch):
    monkeypatch.delenv("DAPR_CONFIG_ENABLED", raising=False)
    monkeypatch.setenv("FLOW_DEFAULT_MAX_ITERATIONS", "25")
    monkeypatch.setenv("FLOW_SECRETS_ENABLED", "yes")
    monkeypatch.setenv("PUBSUB_NAME", "events")

    cfg = EngineConfig()
    cfg.load()
    assert cfg.DEFAULT_MAX_ITERATIONS == 25
    assert cfg.SECRETS_ENABLED is True
    assert cfg.PUBSUB_NAME == "events"
    assert cfg.HTTP_TIMEOUT_SECONDS == 300


def test_engine_config_falls_back_on_malformed_integers(monkeypatch):
    monkeypatch.delenv("DAPR_CONFIG_ENABLED", raising=False)
    monkeypatch.setenv("FLOW_DEFAULT_MAX_ITERATIONS", "lots")
    monkeypatch.setenv("PORT", "")
    monkeypatch.setenv("FLOW_EXPOSE_PROCESS_ENV", "true")

    cfg = EngineConfig()
    cfg.load()
    assert cfg.DEFAULT_MAX_ITERATIONS == 500
    assert cfg.PORT == 8080
    assert cfg.EXPOSE_PROCESS_ENV is True
    assert cfg.MAX_FINISHED_RUNS == 1000
