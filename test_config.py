"""Tests for environment-driven configuration."""

import logging

import pytest

from config import Config, detect_project_id


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "SCOPED_MEMORY_DB_URI",
        "SCOPED_MEMORY_PROJECT_ID",
        "SCOPED_MEMORY_AGENT_ID",
        "SCOPED_MEMORY_PARENT_AGENT_ID",
        "SCOPED_MEMORY_CONTENT_SCANNING",
        "SCOPED_MEMORY_DEBUG",
        "SCOPED_MEMORY_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


class TestConfig:
    """Defaults and overrides."""

    def test_env_overrides(self, monkeypatch, tmp_path):
        """Every setting is read from SCOPED_MEMORY_* variables."""
        monkeypatch.setenv("SCOPED_MEMORY_DB_URI", str(tmp_path))
        monkeypatch.setenv("SCOPED_MEMORY_PROJECT_ID", "github.com/acme/widgets")
        monkeypatch.setenv("SCOPED_MEMORY_AGENT_ID", "agent-7")
        monkeypatch.setenv("SCOPED_MEMORY_PARENT_AGENT_ID", "agent-1")
        monkeypatch.setenv("SCOPED_MEMORY_CONTENT_SCANNING", "false")
        monkeypatch.setenv("SCOPED_MEMORY_LOG_LEVEL", "warning")

        config = Config()
        assert config.db_uri == str(tmp_path)
        assert config.project_id == "github.com/acme/widgets"
        assert config.agent_id == "agent-7"
        assert config.parent_agent_id == "agent-1"
        assert config.content_scanning is False
        assert config.effective_log_level == logging.WARNING
        config.validate()

    def test_defaults(self, monkeypatch):
        """Scanning on, INFO logging, daily cleanup, no parent."""
        monkeypatch.setenv("SCOPED_MEMORY_AGENT_ID", "agent-7")
        config = Config()
        assert config.db_uri.endswith("lancedb")
        assert config.content_scanning is True
        assert config.parent_agent_id is None
        assert config.cleanup_interval_hours == 24
        assert config.effective_log_level == logging.INFO
        assert config.project_id == detect_project_id()

    def test_ephemeral_agent_id(self, caplog):
        """A missing agent id is generated and warned about."""
        with caplog.at_level(logging.WARNING, logger="config"):
            first = Config(project_id="p")
            second = Config(project_id="p")
        assert first.agent_id != second.agent_id
        assert "SCOPED_MEMORY_AGENT_ID" in caplog.text

    def test_debug_wins(self, monkeypatch):
        """Debug mode forces DEBUG logging."""
        monkeypatch.setenv("SCOPED_MEMORY_DEBUG", "true")
        assert Config(agent_id="a", project_id="p").effective_log_level == logging.DEBUG

    def test_unknown_level_falls_back(self):
        """Unrecognized level names fall back to INFO."""
        assert Config(agent_id="a", project_id="p", log_level="CHATTY").effective_log_level == logging.INFO

    @pytest.mark.parametrize("field", ["db_uri", "project_id", "agent_id"])
    def test_validate_rejects_empty(self, field):
        """Required settings cannot be empty."""
        config = Config(**{"agent_id": "a", "project_id": "p", "db_uri": "/tmp/x", field: ""})
        with pytest.raises(ValueError):
            config.validate()

    def test_frozen(self):
        """Configuration is immutable once built."""
        config = Config(agent_id="a", project_id="p")
        with pytest.raises(AttributeError):
            config.agent_id = "b"
