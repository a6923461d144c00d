"""Tests for configuration loading."""

import pytest

from recipesync.config import load_config


class TestConfig:
    """Tests for load_config."""

    def test_defaults(self):
        """Test default configuration values."""
        config = load_config()

        assert config.server.port == 8085
        assert config.store.db_path == "~/.recipesync/sync.db"
        assert config.sync.max_delivery_retries == 5
        assert config.sync.conflict_policy == "last_write_wins"
        assert config.sync.auto_resolve is False
        assert config.notifications.enabled is False
        assert config.notifications.topic_prefix == "recipesync"

    def test_yaml_file(self, tmp_path):
        """Test values are read from YAML, keeping defaults for the rest."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "server:\n"
            "  port: 9000\n"
            "sync:\n"
            "  max_delivery_retries: 2\n"
            "  conflict_policy: keep_server\n"
            "notifications:\n"
            "  enabled: true\n"
            "  broker: mqtt.local\n"
        )

        config = load_config(path)

        assert config.server.port == 9000
        assert config.server.host == "0.0.0.0"
        assert config.sync.max_delivery_retries == 2
        assert config.sync.conflict_policy == "keep_server"
        assert config.sync.version_retry_attempts == 3
        assert config.notifications.enabled is True
        assert config.notifications.broker == "mqtt.local"
        assert config.notifications.port == 1883

    def test_missing_file(self, tmp_path):
        """Test a missing file falls back to defaults."""
        config = load_config(tmp_path / "missing.yaml")

        assert config.server.port == 8085

    def test_env_override(self, monkeypatch, tmp_path):
        """Test environment variables override file values."""
        path = tmp_path / "config.yaml"
        path.write_text("store:\n  db_path: /var/lib/sync.db\n")

        monkeypatch.setenv("RECIPESYNC_STORE_DB_PATH", "/tmp/override.db")
        monkeypatch.setenv("RECIPESYNC_SYNC_AUTO_RESOLVE", "yes")
        monkeypatch.setenv("RECIPESYNC_SYNC_MAX_DELIVERY_RETRIES", "7")
        monkeypatch.setenv("RECIPESYNC_NOTIFY_PORT", "8883")

        config = load_config(path)

        assert config.store.db_path == "/tmp/override.db"
        assert config.sync.auto_resolve is True
        assert config.sync.max_delivery_retries == 7
        assert config.notifications.port == 8883
