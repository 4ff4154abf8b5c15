"""
Tests for configuration management.
"""

from pathlib import Path

import pytest

from lorekeep.config import Settings, get_xdg_data_dir, get_xdg_state_dir


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    """Ensure overrides from the environment don't affect config unit tests."""
    for name in ("DATABASE_URL", "ENABLED_PROVIDERS", "ANALYSIS_TYPES", "LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    yield


class TestSettings:
    """Tests for Settings configuration."""

    def test_defaults(self):
        """Test the local-first defaults."""
        settings = Settings(_env_file=None)

        assert settings.database_url.startswith("sqlite:///")
        assert settings.enabled_providers == ["cli_source_a", "cli_source_b"]
        assert settings.analysis_types == ["learning", "workflow"]
        assert settings.allow_cloud_analysis is False
        assert settings.llm_provider == "none"
        assert settings.embedding_provider == "none"

    def test_default_search_weights(self):
        """Test default hybrid search settings."""
        settings = Settings(_env_file=None)

        assert settings.search_fts_weight == 0.5
        assert settings.search_semantic_weight == 0.5
        assert settings.search_min_semantic_score == 0.7

    def test_csv_lists(self):
        """Test that comma-separated strings become lists."""
        settings = Settings(_env_file=None, enabled_providers="web_source_a, cli_source_b,")

        assert settings.enabled_providers == ["web_source_a", "cli_source_b"]

    def test_csv_lists_from_environment(self, monkeypatch):
        """Test that list settings can be given as plain CSV environment variables."""
        monkeypatch.setenv("ANALYSIS_TYPES", "learning,dedupe")
        monkeypatch.setenv("ALLOW_CLOUD_ANALYSIS", "true")

        settings = Settings(_env_file=None)

        assert settings.analysis_types == ["learning", "dedupe"]
        assert settings.allow_cloud_analysis is True

    def test_log_directory_override(self):
        """Test that log_dir is expanded when set."""
        settings = Settings(_env_file=None, log_dir="~/lorekeep-logs")

        assert settings.log_directory == Path("~/lorekeep-logs").expanduser()

    def test_log_directory_default(self, monkeypatch, tmp_path):
        """Test that the log directory falls back to the XDG state dir."""
        monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path))

        settings = Settings(_env_file=None)

        assert settings.log_directory == tmp_path / "lorekeep" / "logs"


class TestXdgDirectories:
    """Tests for XDG directory resolution."""

    def test_xdg_variables(self, monkeypatch, tmp_path):
        """Test that XDG variables take precedence."""
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
        monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))

        assert get_xdg_data_dir() == str(tmp_path / "data" / "lorekeep")
        assert get_xdg_state_dir() == str(tmp_path / "state" / "lorekeep" / "logs")

    def test_home_fallback(self, monkeypatch, tmp_path):
        """Test the $HOME based defaults."""
        monkeypatch.delenv("XDG_DATA_HOME", raising=False)
        monkeypatch.delenv("XDG_STATE_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))

        assert get_xdg_data_dir() == str(tmp_path / ".local" / "share" / "lorekeep")
        assert get_xdg_state_dir() == str(tmp_path / ".local" / "state" / "lorekeep" / "logs")

    def test_no_home(self, monkeypatch):
        """Test the relative fallbacks without HOME."""
        for name in ("XDG_DATA_HOME", "XDG_STATE_HOME", "HOME"):
            monkeypatch.delenv(name, raising=False)

        assert get_xdg_data_dir() == ".lorekeep"
        assert get_xdg_state_dir() == "./logs"
