"""
Jetstream change stream over aiohttp WebSockets.

Jetstream serves repository commits as JSON messages filtered by
collection. The stream reconnects with doubling backoff and resumes
from the last yielded time_us, so a dropped connection never skips
events inside the retention window.

Invariants:
    - After a reconnect the cursor is the time_us of the last event
      yielded, never the one the subscriber started with
    - Backoff resets after a successful connection

How to change safely:
    - Jetstream silently serves from its oldest event when a cursor is
      too old; staleness is detected by the ingester from cursor age
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

import aiohttp

from ..config import JetstreamConfig
from .base import ChangeEvent, ChangeStreamConnectionError, StreamStats

logger = logging.getLogger(__name__)


class JetstreamChangeStream:
    """ChangeStream implementation backed by a Jetstream instance.

    Example:
        >>> stream = JetstreamChangeStream(JetstreamConfig())
        >>> await stream.connect()
        >>> async for event in stream.subscribe(cursor=1725911162329308):
        ...     print(event.did, event.collection)
    """

    def __init__(
        self,
        config: JetstreamConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._connected = False
        self.stats = StreamStats()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Prepare the HTTP session; the socket opens on subscribe()."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._connected = True
        logger.info(f"Jetstream client ready for {self.config.url}")

    async def close(self) -> None:
        self._connected = False
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        logger.info("Jetstream client closed")

    def _params(self, cursor: int | None) -> list[tuple[str, str]]:
        params = [("wantedCollections", c) for c in self.config.wanted_collections]
        if cursor is not None:
            params.append(("cursor", str(cursor)))
        return params

    async def subscribe(self, cursor: int | None = None) -> AsyncIterator[ChangeEvent]:
        """Yield commit events after cursor, reconnecting until closed.

        Raises:
            ChangeStreamConnectionError: If connect() was not called
        """
        if not self._connected or self._session is None:
            raise ChangeStreamConnectionError("Not connected")

        delay = self.config.reconnect_delay_seconds
        last = cursor
        while self._connected:
            try:
                async with self._session.ws_connect(
                    self.config.url, params=self._params(last), heartbeat=30.0
                ) as ws:
                    self._ws = ws
                    delay = self.config.reconnect_delay_seconds
                    logger.info("Connected to Jetstream", extra={"cursor": last})
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                data = json.loads(msg.data)
                            except json.JSONDecodeError as e:
                                logger.warning(f"Skipping non-JSON Jetstream message: {e}")
                                self.stats.skipped += 1
                                continue
                            event = ChangeEvent.from_message(data)
                            if event is None:
                                self.stats.skipped += 1
                                continue
                            last = event.time_us
                            self.stats.events += 1
                            self.stats.last_time_us = last
                            yield event
                        elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Jetstream connection failed: {e!r}")
            finally:
                self._ws = None

            if not self._connected:
                break
            self.stats.reconnects += 1
            logger.info(f"Reconnecting to Jetstream in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.config.max_reconnect_delay_seconds)
