"""Tests for the command line interface."""

import json
import logging
import sys
from unittest.mock import patch

import pytest

from recipesync.__main__ import JSONFormatter, main
from recipesync.store import Database
from recipesync.sync import SyncCoordinator


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "sync.db"
    monkeypatch.setenv("RECIPESYNC_STORE_DB_PATH", str(path))
    return path


def _run(*argv):
    with patch.object(sys, "argv", ["recipesync", *argv]):
        return main()


class TestJSONFormatter:
    def test_format(self):
        """Test log records become one JSON object."""
        record = logging.LogRecord(
            "recipesync.sync.coordinator", logging.INFO, __file__, 1,
            "Accepted %s", ("Recipe/R1 v1",), None,
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["component"] == "recipesync.sync.coordinator"
        assert data["message"] == "Accepted Recipe/R1 v1"


class TestCommands:
    """Tests for CLI subcommands against a file database."""

    def test_no_command(self, db_path):
        """Test running without a command prints help."""
        assert _run() == 1

    def test_group_without_subcommand(self, db_path):
        """Test group commands require a subcommand."""
        assert _run("queue") == 1

    def test_status_json(self, db_path, capsys):
        """Test status prints store counts."""
        assert _run("status", "--json") == 0

        data = json.loads(capsys.readouterr().out)
        assert data["store"]["change_log_rows"] == 0
        assert data["notifications"]["enabled"] is False

    def test_devices_and_failed_queue(self, db_path, capsys):
        """Test listing devices and parked items."""
        db = Database(db_path)
        db.connect()
        coordinator = SyncCoordinator.create(db)
        tablet = coordinator.register_device("user-1", "Tablet", "tablet", "17", "3.1")
        db.close()

        assert _run("devices", "list", "--user", "user-1") == 0
        assert tablet.id in capsys.readouterr().out

        assert _run("queue", "failed", "--user", "user-1") == 0
        assert "No failed queue items" in capsys.readouterr().out

        assert _run("conflicts", "list", "--user", "user-1") == 0
        assert "No unresolved conflicts" in capsys.readouterr().out

    def test_requeue_unknown(self, db_path):
        """Test requeueing an unknown item fails."""
        assert _run("queue", "requeue", "missing") == 1

    def test_purge(self, db_path, capsys):
        """Test purging reports the number deleted."""
        assert _run("queue", "purge", "--days", "7") == 0
        assert "Purged 0" in capsys.readouterr().out
