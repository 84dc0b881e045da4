"""
Unit tests for aggregator configuration and wiring.

Tests cover:
- Defaults and environment overrides
- Validation failures
- Change stream factory
- Logging setup
"""

import logging
from dataclasses import replace

import json_log_formatter
import pytest

from appview.skyboard_appview.config import (
    BackfillConfig,
    ChangeStreamBackend,
    JetstreamConfig,
    ObservabilityConfig,
    ServerConfig,
)
from appview.skyboard_appview.firehose import (
    InMemoryChangeStream,
    JetstreamChangeStream,
    create_change_stream,
)
from appview.skyboard_appview.main import setup_logging
from sdk.skyboard_sdk.uris import ALL_COLLECTIONS, TASK, TRUST


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        config = ServerConfig()

        assert config.change_stream_backend == ChangeStreamBackend.JETSTREAM
        assert config.jetstream.wanted_collections == ALL_COLLECTIONS
        assert config.jetstream.cursor_max_age_us == 48 * 60 * 60 * 1_000_000
        assert config.backfill.concurrency == 3
        assert config.http.port == 3002

    def test_from_env(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("CHANGE_STREAM_BACKEND", "memory")
        monkeypatch.setenv("DB_PATH", "/tmp/skyboard-test.db")
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("JETSTREAM_WANTED_COLLECTIONS", f"{TASK}, {TRUST}")
        monkeypatch.setenv("CURSOR_MAX_AGE_HOURS", "1")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("CORS_ORIGINS", "https://a.test,https://b.test")

        config = ServerConfig.from_env()

        assert config.change_stream_backend == ChangeStreamBackend.MEMORY
        assert config.storage.db_path == "/tmp/skyboard-test.db"
        assert config.storage.wal_mode is False
        assert config.http.port == 8080
        assert config.http.cors_origins == ("https://a.test", "https://b.test")
        assert config.jetstream.wanted_collections == (TASK, TRUST)
        assert config.jetstream.cursor_max_age_us == 60 * 60 * 1_000_000

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("CHANGE_STREAM_BACKEND", "kafka")
        with pytest.raises(ValueError, match="CHANGE_STREAM_BACKEND"):
            ServerConfig.from_env()

    def test_validate_unknown_collection(self):
        config = ServerConfig(jetstream=JetstreamConfig(wanted_collections=("app.bsky.feed.post",)))
        with pytest.raises(ValueError, match="Unknown collections"):
            config.validate()

    def test_validate_concurrency(self):
        config = ServerConfig(backfill=BackfillConfig(concurrency=0))
        with pytest.raises(ValueError, match="BACKFILL_CONCURRENCY"):
            config.validate()

    def test_validate_backoff(self):
        jetstream = JetstreamConfig(reconnect_delay_seconds=10.0, max_reconnect_delay_seconds=1.0)
        with pytest.raises(ValueError, match="RECONNECT"):
            ServerConfig(jetstream=jetstream).validate()

    def test_validate_log_format(self):
        config = ServerConfig(observability=ObservabilityConfig(log_format="xml"))
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            config.validate()


class TestCreateChangeStream:
    """Tests for the change stream factory."""

    def test_memory(self):
        config = ServerConfig(change_stream_backend=ChangeStreamBackend.MEMORY)
        assert isinstance(create_change_stream(config), InMemoryChangeStream)

    def test_jetstream(self):
        """The Jetstream stream is built unconnected."""
        stream = create_change_stream(ServerConfig())

        assert isinstance(stream, JetstreamChangeStream)
        assert not stream.is_connected


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        setup_logging(ServerConfig())

        root = logging.getLogger()
        [handler] = root.handlers
        assert isinstance(handler.formatter, json_log_formatter.JSONFormatter)
        assert root.level == logging.INFO
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_text_format(self):
        config = replace(
            ServerConfig(),
            observability=ObservabilityConfig(log_level="debug", log_format="text"),
        )
        setup_logging(config)

        root = logging.getLogger()
        [handler] = root.handlers
        assert not isinstance(handler.formatter, json_log_formatter.JSONFormatter)
        assert root.level == logging.DEBUG
