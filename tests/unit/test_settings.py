import pytest

from control_plane.config.settings import AppSettings
from control_plane.errors import ConfigurationError


def test_defaults_without_environment(monkeypatch):
    for name in ("CONTROL_PLANE_STORAGE_BACKEND", "CONTROL_PLANE_RETRY_MAX_ATTEMPTS", "CONTROL_PLANE_ROUTING_FALLBACKS"):
        monkeypatch.delenv(name, raising=False)

    settings = AppSettings.from_env()

    assert settings.storage_backend == "memory"
    assert settings.retry_max_attempts == 3
    assert settings.outbox_lease_ttl_seconds == 300.0
    assert settings.routing_fallback_providers == ()


def test_routing_and_retry_options_from_environment(monkeypatch):
    monkeypatch.setenv("CONTROL_PLANE_ROUTING_PROVIDER", "openai")
    monkeypatch.setenv("CONTROL_PLANE_ROUTING_MODEL", "gpt-4o")
    monkeypatch.setenv("CONTROL_PLANE_ROUTING_FALLBACKS", "anthropic, azure,")
    monkeypatch.setenv("CONTROL_PLANE_RETRY_MAX_ATTEMPTS", "5")

    settings = AppSettings.from_env()

    routing = settings.routing_options()
    assert routing.provider == "openai"
    assert routing.fallback_providers == ("anthropic", "azure")
    assert routing.policy_version == "static"
    assert settings.retry_options().max_attempts == 5


def test_malformed_number_is_a_configuration_error(monkeypatch):
    monkeypatch.setenv("CONTROL_PLANE_DEDUP_TTL", "soon")

    with pytest.raises(ConfigurationError):
        AppSettings.from_env()
