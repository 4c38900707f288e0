import pytest

from chatops.settings import get_settings, reset_settings_cache


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


def test_defaults(monkeypatch):
    for name in ("DATABASE_URL", "GATEWAY_API_URL", "GATEWAY_WEBHOOK_TOKEN", "HYBRID_SWEEP_ENABLED"):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.database_url is None
    assert settings.gateway_api_url == "http://localhost:8080"
    assert settings.gateway_webhook_token is None
    assert settings.default_conversation_mode == "ai"
    assert settings.hybrid_sweep_enabled is True
    assert settings.hybrid_sweep_interval_seconds == 60.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("GATEWAY_API_URL", "http://evolution:8080/")
    monkeypatch.setenv("GATEWAY_FALLBACK_URL", "http://baileys:3000/")
    monkeypatch.setenv("DEFAULT_CONVERSATION_MODE", "HYBRID")
    monkeypatch.setenv("HYBRID_SWEEP_ENABLED", "off")
    monkeypatch.setenv("HYBRID_SWEEP_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("MEDIA_BUCKET", "")

    settings = get_settings()

    assert settings.gateway_api_url == "http://evolution:8080"
    assert settings.gateway_fallback_url == "http://baileys:3000"
    assert settings.default_conversation_mode == "hybrid"
    assert settings.hybrid_sweep_enabled is False
    assert settings.hybrid_sweep_interval_seconds == 15.0
    assert settings.media_bucket is None


def test_settings_are_cached_until_reset(monkeypatch):
    monkeypatch.setenv("GATEWAY_PROVIDER", "evolution")
    first = get_settings()
    monkeypatch.setenv("GATEWAY_PROVIDER", "cloud")

    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().gateway_provider == "cloud"
