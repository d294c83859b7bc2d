"""
relay.py — Fire-and-forget telemetry over a persistent WebSocket.

``publish()`` never blocks and never raises: messages go into a bounded
queue and a background task drains it over a ``websockets`` connection.
When the queue is full the oldest message is dropped.  Connection loss
is handled here with exponential backoff; the interception pipeline
never sees it.

``publish()`` may be called from another thread (the mitmproxy addon
runs on its own loop); delivery then crosses over with
``loop.call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from rewrite_bridge.errors import RelayUnavailable

logger = logging.getLogger(__name__)


class TelemetryRelay:
    """Background WebSocket sender.

    Parameters
    ----------
    url:
        ``ws://`` or ``wss://`` address of the sink.
    queue_size:
        Maximum number of pending messages before the oldest is dropped.
    reconnect_delay:
        Initial delay between reconnect attempts (seconds).
    max_reconnect_delay:
        Upper bound for the exponential backoff (seconds).
    open_timeout:
        Handshake timeout handed to ``websockets.connect``.
    """

    def __init__(
        self,
        url: str,
        queue_size: int = 256,
        reconnect_delay: float = 0.5,
        max_reconnect_delay: float = 30.0,
        open_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.queue_size = queue_size
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.open_timeout = open_timeout

        self.sent: int = 0
        self.dropped: int = 0
        self.connected: bool = False

        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._lock = threading.Lock()

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._run(), name="TelemetryRelay")
        logger.info("Telemetry relay to %s started", self.url)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Telemetry relay cancelled.")
        self.connected = False
        logger.info("Telemetry relay stopped (sent=%d, dropped=%d, pending=%d)", self.sent, self.dropped, self._queue.qsize())

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def wait_connected(self, timeout: float) -> None:
        """Wait for the first connection.

        Raises
        ------
        RelayUnavailable
            If the relay is not started or not connected within *timeout*.
        """
        if self._task is None:
            raise RelayUnavailable("Telemetry relay is not started")
        try:
            async with asyncio.timeout(timeout):
                while not self.connected:
                    if self._task.done():
                        raise RelayUnavailable("Telemetry relay task exited")
                    await asyncio.sleep(0.05)
        except TimeoutError:
            raise RelayUnavailable(f"No connection to {self.url} after {timeout}s") from None

    # ── publishing ────────────────────────────────────────────────────────

    def publish(self, message: dict[str, Any]) -> None:
        try:
            payload = json.dumps(message)
        except (TypeError, ValueError) as e:
            logger.warning("Unserialisable telemetry message dropped: %s", e)
            self.dropped += 1
            return

        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if loop is None or running is loop:
            self._enqueue(payload)
        elif loop.is_closed():
            self.dropped += 1
        else:
            loop.call_soon_threadsafe(self._enqueue, payload)

    def _enqueue(self, payload: str) -> None:
        with self._lock:
            if self._queue.full():
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass
            self._queue.put_nowait(payload)

    # ── sender ────────────────────────────────────────────────────────────

    async def _run(self) -> None:
        delay = self.reconnect_delay
        pending: Optional[str] = None
        while True:
            try:
                async with websockets.connect(self.url, open_timeout=self.open_timeout) as ws:
                    self.connected = True
                    delay = self.reconnect_delay
                    logger.debug("Telemetry relay connected to %s", self.url)
                    while True:
                        if pending is None:
                            pending = await self._queue.get()
                        await ws.send(pending)
                        pending = None
                        self.sent += 1
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, ConnectionClosed, WebSocketException) as e:
                if self.connected:
                    logger.warning("Telemetry relay lost connection: %s", e)
                else:
                    logger.debug("Telemetry relay unavailable: %s", e)
            finally:
                self.connected = False

            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)
