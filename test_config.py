"""
Configuration tests.
"""

import pytest

from client.config import Settings


def test_defaults(monkeypatch):
    for name in ("E2EE_RELAY_URL", "E2EE_FRESHNESS_MS", "E2EE_CHUNK_SIZE", "E2EE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings()
    assert settings.RELAY_URL == "http://localhost:4000/api"
    assert settings.FRESHNESS_MS == 300000
    assert settings.CHUNK_SIZE == 1024 * 1024
    assert settings.LOG_LEVEL == "INFO"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("E2EE_RELAY_URL", "https://relay.example/api")
    monkeypatch.setenv("E2EE_MESSAGE_POLL_SECONDS", "0.5")
    monkeypatch.setenv("E2EE_LOG_LEVEL", "debug")

    settings = Settings()
    assert settings.RELAY_URL == "https://relay.example/api"
    assert settings.MESSAGE_POLL_SECONDS == 0.5
    assert settings.LOG_LEVEL == "DEBUG"


def test_invalid_freshness_rejected(monkeypatch):
    monkeypatch.setenv("E2EE_FRESHNESS_MS", "0")

    with pytest.raises(ValueError):
        Settings()
