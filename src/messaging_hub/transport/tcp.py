"""TCP transport.

Envelopes are written as compact JSON objects directly on the socket, with
no delimiter between them. Accepted URIs: ``host:port`` or
``net.tcp://host:port``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlsplit

from .base import BaseTransport
from .framing import DEFAULT_MAX_BUFFER_SIZE, JsonStreamDecoder, encode

logger = logging.getLogger(__name__)

DEFAULT_PORT = 55321
READ_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_PENDING_WRITES = 1024


def parse_tcp_uri(uri: str) -> tuple[str, int]:
    """Split a TCP URI into host and port."""
    if "://" in uri:
        parts = urlsplit(uri)
        if parts.scheme != "net.tcp":
            raise ValueError(f"Unsupported URI scheme for TCP transport: {parts.scheme}")
        if not parts.hostname:
            raise ValueError(f"Missing host in URI: {uri}")
        return parts.hostname, parts.port or DEFAULT_PORT

    host, sep, port = uri.rpartition(":")
    if not sep:
        return uri, DEFAULT_PORT
    if not host:
        raise ValueError(f"Missing host in URI: {uri}")
    return host, int(port)


class TcpTransport(BaseTransport):
    """Transport over a plain TCP connection.

    ``send`` must not block, so envelopes are queued and written by a single
    writer task that waits for the socket buffer to drain between writes.
    When the hub reads too slowly and ``max_pending_writes`` envelopes are
    queued, ``send`` raises ConnectionError.
    """

    def __init__(
        self,
        trace_enabled: bool = False,
        trace_logger: logging.Logger | None = None,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        max_pending_writes: int = DEFAULT_MAX_PENDING_WRITES,
        flush_timeout: float = 2.0,
    ) -> None:
        super().__init__(trace_enabled=trace_enabled, trace_logger=trace_logger)
        self._max_buffer_size = max_buffer_size
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._max_pending_writes = max_pending_writes
        self._flush_timeout = flush_timeout
        self._outgoing: asyncio.Queue[bytes | None] = asyncio.Queue(max_pending_writes)
        self._writer_task: asyncio.Task[None] | None = None

    async def _do_open(self, uri: str) -> None:
        host, port = parse_tcp_uri(uri)
        self._reader, self._writer = await asyncio.open_connection(host, port)
        self._outgoing = asyncio.Queue(self._max_pending_writes)
        self._writer_task = asyncio.create_task(self._write_loop(self._writer))

    async def _do_close(self) -> None:
        task, self._writer_task = self._writer_task, None
        if task:
            # Let queued envelopes go out before closing
            try:
                self._outgoing.put_nowait(None)
                await asyncio.wait_for(task, timeout=self._flush_timeout)
            except (asyncio.QueueFull, TimeoutError, asyncio.CancelledError):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await writer.wait_closed()

    def _do_send(self, envelope: dict[str, Any]) -> None:
        if self._writer is None:
            raise ConnectionError("Socket not open")
        try:
            self._outgoing.put_nowait(encode(envelope))
        except asyncio.QueueFull:
            raise ConnectionError(
                f"Write queue full ({self._max_pending_writes} envelopes pending)"
            ) from None

    async def _write_loop(self, writer: asyncio.StreamWriter) -> None:
        """Background task writing queued envelopes in order."""
        while True:
            data = await self._outgoing.get()
            if data is None:
                return
            try:
                writer.write(data)
                await writer.drain()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Socket closed while sending, dropping remaining envelopes: {e}")
                return

    async def _receive_envelopes(self) -> AsyncIterator[dict[str, Any]]:
        if self._reader is None:
            raise ConnectionError("Socket not open")

        decoder = JsonStreamDecoder(self._max_buffer_size)
        while True:
            chunk = await self._reader.read(READ_CHUNK_SIZE)
            if not chunk:
                # EOF - hub closed the connection
                if decoder.buffered:
                    logger.warning(f"Discarding {decoder.buffered} characters of partial envelope")
                break
            for envelope in decoder.feed(chunk):
                yield envelope
