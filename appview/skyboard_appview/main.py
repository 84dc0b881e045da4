"""
Skyboard AppView - Main entry point.

This module starts the aggregator with all components:
- HTTP/WebSocket API (uvicorn + FastAPI)
- Ingester loop (change stream -> SQLite)
- Backfiller (repositories -> SQLite, on read miss and stale cursor)

Usage:
    skyboard-appview
    python -m appview.skyboard_appview.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is initialized before the API or ingester touch it
    - Shutdown stops the ingester before closing the change stream, so the
      final cursor save reflects every processed event

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import httpx
import json_log_formatter
import uvicorn

from sdk.skyboard_sdk.repo import IdentityResolver, RepoClient

from .api import create_app
from .apply import AggregatorStore, Ingester
from .backfill import Backfiller
from .config import ServerConfig
from .firehose import ChangeStream, create_change_stream
from .notify import BoardNotifier

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """Aggregator orchestrator.

    Manages the lifecycle of all components:
    - Aggregator store
    - Change stream connection and ingester
    - Repository client and backfiller
    - uvicorn serving the FastAPI app

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: AggregatorStore | None = None
        self.stream: ChangeStream | None = None
        self.notifier = BoardNotifier()
        self.http_client: httpx.AsyncClient | None = None
        self.backfiller: Backfiller | None = None
        self.ingester: Ingester | None = None
        self.http_server: uvicorn.Server | None = None

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Skyboard AppView")
        self.config.log_config()

        try:
            storage = self.config.storage
            self.store = AggregatorStore(
                db_path=storage.db_path,
                wal_mode=storage.wal_mode,
                busy_timeout_ms=storage.busy_timeout_ms,
                max_retries=storage.max_retries,
                retry_delay_ms=storage.retry_delay_ms,
            )
            await self.store.initialize()

            self.http_client = httpx.AsyncClient(
                timeout=self.config.backfill.request_timeout_seconds
            )
            resolver = IdentityResolver(self.http_client, self.config.backfill.plc_directory)
            self.backfiller = Backfiller(
                self.store,
                RepoClient(self.http_client, resolver),
                concurrency=self.config.backfill.concurrency,
            )

            self.stream = create_change_stream(self.config)
            await self.stream.connect()
            logger.info("Change stream connected")

            self.ingester = Ingester(
                self.stream,
                self.store,
                self.notifier,
                self.backfiller,
                cursor_save_interval=self.config.jetstream.cursor_save_interval_seconds,
                cursor_max_age_us=self.config.jetstream.cursor_max_age_us,
            )
            ingest_task = asyncio.create_task(self.ingester.start())
            ingest_task.add_done_callback(self._on_ingester_done)
            self._tasks.append(ingest_task)

            app = create_app(self.store, self.notifier, self.backfiller, self.config.http)
            self.http_server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=self.config.http.host,
                    port=self.config.http.port,
                    log_config=None,
                )
            )
            # Signals are handled by main()
            self.http_server.install_signal_handlers = lambda: None
            self._tasks.append(asyncio.create_task(self.http_server.serve()))

            self._running = True
            logger.info(f"Skyboard AppView listening on port {self.config.http.port}")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self._shutdown_components()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping Skyboard AppView")
        await self._shutdown_components()
        self._running = False
        logger.info("Skyboard AppView stopped")

    async def _shutdown_components(self) -> None:
        if self.http_server is not None:
            self.http_server.should_exit = True

        if self.ingester is not None:
            await self.ingester.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.stream is not None:
            await self.stream.close()
            self.stream = None

        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None

    def _on_ingester_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or task.exception() is None:
            return
        # Restart resumes from the last saved cursor
        logger.error(f"Ingester stopped: {task.exception()}; shutting down")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
