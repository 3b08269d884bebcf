import pytest

from cortex_chat.config import get_settings
from cortex_chat.services.observability import reset_metrics


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Each test sees settings rebuilt from its own environment."""
    monkeypatch.setenv("THREAD_STORE_BACKEND", "memory")
    monkeypatch.setenv("COMMIT_BACKOFF_BASE", "0")
    get_settings.cache_clear()
    reset_metrics()
    yield
    get_settings.cache_clear()
