"""WebSocket transport.

One envelope per text frame, negotiated under the ``lime`` subprotocol.
Accepted URIs: ``ws://host:port/path`` or ``wss://host:port/path``.

``send`` must not block, but writing a frame is a coroutine, so outgoing
envelopes go through a queue drained by a single writer task. This keeps
frames in the order ``send`` was called.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import websockets

from .base import BaseTransport

logger = logging.getLogger(__name__)

SUBPROTOCOL = "lime"


class WebSocketTransport(BaseTransport):
    """Transport over a WebSocket connection."""

    def __init__(
        self,
        trace_enabled: bool = False,
        trace_logger: logging.Logger | None = None,
        ping_interval: float | None = 30,
        flush_timeout: float = 2.0,
    ) -> None:
        super().__init__(trace_enabled=trace_enabled, trace_logger=trace_logger)
        self._ping_interval = ping_interval
        self._flush_timeout = flush_timeout
        self._ws: Any = None  # websockets ClientConnection
        self._outgoing: asyncio.Queue[str | None] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None

    async def _do_open(self, uri: str) -> None:
        if not uri.startswith(("ws://", "wss://")):
            raise ValueError(f"WebSocket URI must start with ws:// or wss://: {uri}")

        self._ws = await websockets.connect(
            uri,
            subprotocols=[SUBPROTOCOL],
            ping_interval=self._ping_interval,
        )
        self._outgoing = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop(self._ws))

    async def _do_close(self) -> None:
        task, self._writer_task = self._writer_task, None
        if task:
            # Let queued frames go out before closing
            self._outgoing.put_nowait(None)
            try:
                await asyncio.wait_for(task, timeout=self._flush_timeout)
            except (TimeoutError, asyncio.CancelledError):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    def _do_send(self, envelope: dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("WebSocket not connected")
        self._outgoing.put_nowait(json.dumps(envelope, separators=(",", ":")))

    async def _write_loop(self, ws: Any) -> None:
        """Background task writing queued frames in order."""
        while True:
            frame = await self._outgoing.get()
            if frame is None:
                return
            try:
                await ws.send(frame)
            except websockets.ConnectionClosed:
                logger.debug("WebSocket closed while sending, dropping remaining frames")
                return

    async def _receive_envelopes(self) -> AsyncIterator[dict[str, Any]]:
        if self._ws is None:
            raise ConnectionError("WebSocket not connected")

        try:
            async for data in self._ws:
                try:
                    envelope = json.loads(data)
                except json.JSONDecodeError as e:
                    logger.warning(f"Invalid WebSocket frame: {e}")
                    continue
                yield envelope
        except websockets.ConnectionClosed as e:
            logger.debug(f"WebSocket closed: {e}")
