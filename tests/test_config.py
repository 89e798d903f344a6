"""
Unit tests for configuration loading and validation.
"""

import pytest

from config_validator import ConfigValidator, Settings, describe, load_settings

ALL_VARS = [
    "AZURE_SUBSCRIPTION_ID", "AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET",
    "COMPLETION_BACKEND", "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_KEY", "OPENAI_API_KEY",
    "OLLAMA_URL", "CACHE_MAX_SIZE", "CACHE_TTL_SECONDS", "RETRY_MAX_ATTEMPTS",
    "DATA_FETCH_TIMEOUT_SECONDS", "QUERY_RATE_LIMIT", "ALLOWED_ORIGINS",
    "COPILOT_REDACT_SENSITIVE", "JSON_LOGS",
]


@pytest.fixture
def env(monkeypatch):
    for var in ALL_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", "sub")
    monkeypatch.setenv("AZURE_TENANT_ID", "tenant")
    monkeypatch.setenv("AZURE_CLIENT_ID", "client")
    monkeypatch.setenv("AZURE_CLIENT_SECRET", "secret")
    monkeypatch.setenv("COMPLETION_BACKEND", "ollama")
    return monkeypatch


class TestLoadSettings:

    def test_defaults(self, env):
        settings = load_settings()
        assert settings.azure_subscription_id == "sub"
        assert settings.completion_backend == "ollama"
        assert settings.cache_max_size == 500
        assert settings.cache_ttl == 300
        assert settings.retry_max_attempts == 3
        assert settings.retry_initial_delay_ms == 1000
        assert settings.azure_breaker_failures == 5
        assert settings.completion_breaker_failures == 3
        assert settings.query_rate_limit == "100/15 minutes"
        assert settings.redact_sensitive is True

    def test_overrides(self, env):
        env.setenv("CACHE_MAX_SIZE", "50")
        env.setenv("COPILOT_REDACT_SENSITIVE", "false")
        env.setenv("ALLOWED_ORIGINS", "http://a.example, http://b.example,")
        settings = load_settings()
        assert settings.cache_max_size == 50
        assert settings.redact_sensitive is False
        assert settings.allowed_origins == ["http://a.example", "http://b.example"]

    def test_settings_are_immutable(self):
        settings = Settings()
        with pytest.raises(Exception):
            settings.cache_max_size = 1


class TestConfigValidator:

    def test_valid(self, env):
        is_valid, errors, warnings = ConfigValidator.validate()
        assert is_valid, errors
        assert any("CACHE_MAX_SIZE" in w for w in warnings)

    def test_missing_required(self, env):
        env.delenv("AZURE_CLIENT_SECRET")
        is_valid, errors, _ = ConfigValidator.validate()
        assert not is_valid
        assert any("AZURE_CLIENT_SECRET" in e for e in errors)

    def test_backend_specific_vars(self, env):
        env.setenv("COMPLETION_BACKEND", "azure")
        is_valid, errors, _ = ConfigValidator.validate()
        assert not is_valid
        assert any("AZURE_OPENAI_ENDPOINT" in e for e in errors)
        assert any("AZURE_OPENAI_API_KEY" in e for e in errors)

    def test_unknown_backend(self, env):
        env.setenv("COMPLETION_BACKEND", "bard")
        is_valid, errors, _ = ConfigValidator.validate()
        assert not is_valid

    @pytest.mark.parametrize("var,value", [
        ("CACHE_MAX_SIZE", "0"),
        ("RETRY_MAX_ATTEMPTS", "many"),
        ("DATA_FETCH_TIMEOUT_SECONDS", "-1"),
        ("OLLAMA_URL", "ollama:11434"),
    ])
    def test_bad_values(self, env, var, value):
        env.setenv(var, value)
        is_valid, errors, _ = ConfigValidator.validate()
        assert not is_valid
        assert any(var in e for e in errors)

    def test_exit_on_error(self, env):
        env.delenv("AZURE_SUBSCRIPTION_ID")
        with pytest.raises(SystemExit):
            ConfigValidator.validate_and_exit_on_error()


def test_describe_has_no_secrets():
    settings = Settings(azure_client_secret="s3cret", openai_api_key="sk-123")
    text = str(describe(settings))
    assert "s3cret" not in text
    assert "sk-123" not in text
    assert "azure" in text
