"""Tests for configuration loading."""

import tempfile
from pathlib import Path

from pulse.config import Settings


class TestConfigDefaults:
    def test_default_settings_load(self):
        """Settings should construct with all defaults when no config file exists."""
        settings = Settings()
        assert settings.general.log_level == "INFO"
        assert settings.anthropic.model == "claude-haiku-4-5-20251001"
        assert settings.mailbox.interval_minutes == 5
        assert settings.mailbox.lookback_hours == 24
        assert settings.mailbox.allow_relaxed_tls is True
        assert settings.watch.debounce_seconds == 2.0
        assert settings.clustering.max_clusters == 3
        assert settings.clustering.min_documents == 3

    def test_alert_defaults(self):
        alerts = Settings().alerts
        assert alerts.trigger_interval_minutes == 2
        assert alerts.trigger_initial_delay_seconds == 5.0
        assert alerts.metrics_min_interval_seconds == 60
        assert alerts.spam_max_alerts == 3
        assert alerts.dedup_window_minutes == 60

    def test_watch_extensions(self):
        assert set(Settings().watch.extensions) == {".txt", ".csv", ".xlsx", ".xml"}

    def test_db_url_default(self):
        settings = Settings()
        assert "asyncpg" in settings.general.db_url


class TestConfigFromToml:
    def test_load_from_toml(self):
        """Should load overrides from a TOML file."""
        toml_content = """
[general]
log_level = "DEBUG"

[mailbox]
interval_minutes = 10
accounts = [{ address = "support@example.com" }, { address = "csdinsure@gmail.com", password = "pw" }]

[clustering]
random_state = 42
"""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write(toml_content)
            f.flush()

            settings = Settings.load(Path(f.name))
            assert settings.general.log_level == "DEBUG"
            assert settings.mailbox.interval_minutes == 10
            assert [a.address for a in settings.mailbox.accounts] == ["support@example.com", "csdinsure@gmail.com"]
            assert settings.mailbox.accounts[0].password is None
            assert settings.mailbox.accounts[1].password == "pw"
            assert settings.clustering.random_state == 42

    def test_missing_config_file_uses_defaults(self):
        settings = Settings.load(Path("/nonexistent/config.toml"))
        assert settings.general.log_level == "INFO"

    def test_partial_toml_fills_defaults(self):
        """A TOML with only [general] should still have defaults for other sections."""
        toml_content = """
[general]
log_level = "WARNING"
"""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write(toml_content)
            f.flush()

            settings = Settings.load(Path(f.name))
            assert settings.general.log_level == "WARNING"
            assert settings.alerts.spam_window_minutes == 60
            assert settings.sentiment.conversation_batch_size == 50
