import pytest
from pydantic import ValidationError

from cortex_chat.config import ServiceSettings, get_settings


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("OPENAI_BASE_URL", "http://llm.internal/v1/")
    monkeypatch.setenv("CHAT_MODEL", "gpt-test")
    monkeypatch.setenv("RELAY_CONTINUE_ON_DISCONNECT", "false")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test,")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.chat_model == "gpt-test"
    assert settings.relay_continue_on_disconnect is False
    assert settings.get_completions_url() == "http://llm.internal/v1/chat/completions"
    assert settings.get_cors_origins() == ["http://a.test", "http://b.test"]
    assert get_settings() is settings


def test_defaults():
    settings = ServiceSettings(_env_file=None)
    assert settings.default_title == "New Chat"
    assert settings.fallback_reply == "Sorry, something went wrong while generating the response."
    assert settings.commit_max_attempts == 3
    assert settings.port == 8080


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("THREAD_STORE_BACKEND", "redis")
    with pytest.raises(ValidationError):
        ServiceSettings(_env_file=None)

    monkeypatch.setenv("THREAD_STORE_BACKEND", "memory")
    monkeypatch.setenv("COMMIT_MAX_ATTEMPTS", "0")
    with pytest.raises(ValidationError):
        ServiceSettings(_env_file=None)
