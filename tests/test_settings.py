"""Tests for environment based settings."""

import pytest

from nm_file_secret_agent.config import ConfigError
from nm_file_secret_agent.settings import DEFAULT_IDENTITY, AgentSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("IDENTITY", "BUS", "BACKOFF_INITIAL", "BACKOFF_MAX", "CALL_TIMEOUT", "POLL_INTERVAL"):
        monkeypatch.delenv(f"NM_FILE_SECRET_AGENT_{name}", raising=False)


class TestAgentSettings:
    def test_defaults(self):
        settings = AgentSettings.from_env()

        assert settings == AgentSettings()
        assert settings.identity == DEFAULT_IDENTITY
        assert settings.bus == "system"
        assert settings.backoff_max == 30.0

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_IDENTITY", "my-agent")
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_BUS", "Session")
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_BACKOFF_INITIAL", "0.5")
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_BACKOFF_MAX", "10")

        settings = AgentSettings.from_env()

        assert settings.identity == "my-agent"
        assert settings.bus == "session"
        assert settings.backoff_initial == 0.5
        assert settings.backoff_max == 10.0

    def test_blank_values_use_defaults(self, monkeypatch):
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_IDENTITY", "  ")

        assert AgentSettings.from_env().identity == DEFAULT_IDENTITY

    def test_invalid_bus(self, monkeypatch):
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_BUS", "user")

        with pytest.raises(ConfigError, match="BUS must be one of"):
            AgentSettings.from_env()

    @pytest.mark.parametrize("value", ["soon", "0", "-1"])
    def test_invalid_seconds(self, monkeypatch, value):
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_CALL_TIMEOUT", value)

        with pytest.raises(ConfigError, match="CALL_TIMEOUT"):
            AgentSettings.from_env()

    def test_backoff_max_below_initial(self, monkeypatch):
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_BACKOFF_INITIAL", "60")

        with pytest.raises(ConfigError, match="BACKOFF_MAX"):
            AgentSettings.from_env()
