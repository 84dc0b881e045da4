"""
Configuration management for the Skyboard aggregator (appview).

All configuration is done via environment variables - no config files
inside containers. This module provides typed configuration classes with
validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep JETSTREAM_WANTED_COLLECTIONS in sync with the collections the
      ingester handles
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from sdk.skyboard_sdk.uris import ALL_COLLECTIONS

logger = logging.getLogger(__name__)

HOUR_US = 60 * 60 * 1_000_000


class ChangeStreamBackend(Enum):
    """Supported change stream backends."""

    JETSTREAM = "jetstream"
    MEMORY = "memory"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class JetstreamConfig:
    """Jetstream firehose configuration.

    Attributes:
        url: Jetstream subscribe endpoint (WebSocket)
        wanted_collections: Collections requested from Jetstream
        reconnect_delay_seconds: First reconnect delay
        max_reconnect_delay_seconds: Reconnect delay cap (doubling backoff)
        cursor_save_interval_seconds: How often the cursor is persisted
        cursor_max_age_us: Cursors older than this trigger reconciliation
    """

    url: str = "wss://jetstream2.us-east.bsky.network/subscribe"
    wanted_collections: tuple[str, ...] = ALL_COLLECTIONS
    reconnect_delay_seconds: float = 1.0
    max_reconnect_delay_seconds: float = 30.0
    cursor_save_interval_seconds: float = 5.0
    cursor_max_age_us: int = 48 * HOUR_US

    @classmethod
    def from_env(cls) -> JetstreamConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("JETSTREAM_URL", "wss://jetstream2.us-east.bsky.network/subscribe"),
            wanted_collections=_env_list("JETSTREAM_WANTED_COLLECTIONS", ALL_COLLECTIONS),
            reconnect_delay_seconds=float(os.getenv("JETSTREAM_RECONNECT_DELAY", "1.0")),
            max_reconnect_delay_seconds=float(os.getenv("JETSTREAM_MAX_RECONNECT_DELAY", "30.0")),
            cursor_save_interval_seconds=float(os.getenv("CURSOR_SAVE_INTERVAL", "5.0")),
            cursor_max_age_us=int(float(os.getenv("CURSOR_MAX_AGE_HOURS", "48")) * HOUR_US),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Aggregator database configuration.

    Attributes:
        db_path: SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        max_retries: Attempts for a write that finds the database locked
        retry_delay_ms: Delay between those attempts
    """

    db_path: str = "./data/skyboard.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    max_retries: int = 3
    retry_delay_ms: int = 100

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "./data/skyboard.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            max_retries=int(os.getenv("SQLITE_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("SQLITE_RETRY_DELAY_MS", "100")),
        )


@dataclass(frozen=True)
class BackfillConfig:
    """Repository backfill configuration.

    Attributes:
        plc_directory: PLC directory for did:plc resolution
        concurrency: Participants fetched in parallel
        request_timeout_seconds: Per-request timeout for repository calls
    """

    plc_directory: str = "https://plc.directory"
    concurrency: int = 3
    request_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> BackfillConfig:
        """Load configuration from environment variables."""
        return cls(
            plc_directory=os.getenv("PLC_DIRECTORY_URL", "https://plc.directory"),
            concurrency=int(os.getenv("BACKFILL_CONCURRENCY", "3")),
            request_timeout_seconds=float(os.getenv("BACKFILL_REQUEST_TIMEOUT", "10.0")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Bind host
        port: Bind port
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 3002
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3002")),
            cors_origins=_env_list("CORS_ORIGINS", ("*",)),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete aggregator configuration.

    Attributes:
        change_stream_backend: Which change stream to consume
        jetstream: Jetstream configuration
        storage: Database configuration
        backfill: Backfill configuration
        http: HTTP API configuration
        observability: Logging configuration
    """

    change_stream_backend: ChangeStreamBackend = ChangeStreamBackend.JETSTREAM
    jetstream: JetstreamConfig = field(default_factory=JetstreamConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        backend_str = os.getenv("CHANGE_STREAM_BACKEND", "jetstream").lower()
        try:
            backend = ChangeStreamBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid CHANGE_STREAM_BACKEND '{backend_str}'. Must be one of: jetstream, memory"
            )

        config = cls(
            change_stream_backend=backend,
            jetstream=JetstreamConfig.from_env(),
            storage=StorageConfig.from_env(),
            backfill=BackfillConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.change_stream_backend == ChangeStreamBackend.JETSTREAM and not self.jetstream.url:
            raise ValueError("JETSTREAM_URL is required when CHANGE_STREAM_BACKEND=jetstream")
        if self.backfill.concurrency < 1:
            raise ValueError("BACKFILL_CONCURRENCY must be at least 1")
        if self.jetstream.max_reconnect_delay_seconds < self.jetstream.reconnect_delay_seconds:
            raise ValueError("JETSTREAM_MAX_RECONNECT_DELAY must not be below JETSTREAM_RECONNECT_DELAY")
        unknown = set(self.jetstream.wanted_collections) - set(ALL_COLLECTIONS)
        if unknown:
            raise ValueError(f"Unknown collections in JETSTREAM_WANTED_COLLECTIONS: {sorted(unknown)}")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be json or text")

        if not os.path.exists(os.path.dirname(os.path.abspath(self.storage.db_path))):
            logger.warning(
                f"Database directory does not exist for {self.storage.db_path}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "change_stream_backend": self.change_stream_backend.value,
                "jetstream_url": self.jetstream.url
                if self.change_stream_backend == ChangeStreamBackend.JETSTREAM
                else None,
                "db_path": self.storage.db_path,
                "http_port": self.http.port,
                "backfill_concurrency": self.backfill.concurrency,
                "log_level": self.observability.log_level,
            },
        )
