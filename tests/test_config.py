"""Tests for Config.from_env and structured logging."""

import json
import logging
import sys

import pytest

from standards_history.config import Config
from standards_history.logging import JSONFormatter, setup_logging


class TestConfigFromEnv:
    def test_requires_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            Config.from_env()

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/history")
        for name in (
            "HISTORY_USER_ID",
            "HISTORY_TIMEZONE",
            "HISTORY_MUTATION_CHANNEL",
            "HISTORY_POLL_INTERVAL",
            "HISTORY_RETRY_MAX_ATTEMPTS",
            "HISTORY_LOG_FORMAT",
        ):
            monkeypatch.delenv(name, raising=False)

        config = Config.from_env()

        assert config.user_id is None
        assert config.timezone == "UTC"
        assert config.mutation_channel == "activity_log_mutations"
        assert config.poll_interval_seconds == 30.0
        assert config.retry_max_attempts == 3
        assert config.log_format == "json"

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/history")
        monkeypatch.setenv("HISTORY_USER_ID", " user-7 ")
        monkeypatch.setenv("HISTORY_TIMEZONE", "Europe/Berlin")
        monkeypatch.setenv("HISTORY_POLL_INTERVAL", "2.5")
        monkeypatch.setenv("HISTORY_LOG_FORMAT", "text")

        config = Config.from_env()

        assert config.user_id == "user-7"
        assert config.timezone == "Europe/Berlin"
        assert config.poll_interval_seconds == 2.5
        assert config.log_format == "text"

    def test_invalid_timezone_falls_back_to_utc(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/history")
        monkeypatch.setenv("HISTORY_TIMEZONE", "Nowhere/Atlantis")

        assert Config.from_env().timezone == "UTC"


class TestJSONFormatter:
    def test_includes_history_extras(self):
        record = logging.LogRecord("standards_history.engine", logging.INFO, __file__, 1, "done %s", ("x",), None)
        record.history_source = "resume"
        record.unrelated = "skip"

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "done x"
        assert payload["level"] == "INFO"
        assert payload["history_source"] == "resume"
        assert "unrelated" not in payload

    def test_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        payload = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in payload["exception"]

    def test_setup_logging_installs_single_handler(self):
        root = logging.getLogger()
        saved = root.handlers[:]
        try:
            setup_logging("json")
            setup_logging("text")
            assert len(root.handlers) == 1
            assert not isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.handlers[:] = saved
