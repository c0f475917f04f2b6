"""Transport abstraction.

A transport moves envelopes (JSON objects) between the client and the hub.
It knows nothing about envelope kinds; it opens a connection, writes
envelopes in the order ``send`` is called, and reports every inbound
envelope through the ``on_envelope`` callback, in delivery order.

Callbacks (assign after construction):
- on_envelope(envelope): one inbound envelope, already JSON-decoded
- on_open(): connection established
- on_close(): connection closed, by either side; fired once per open
- on_error(error): the receive side failed

Encryption and compression negotiation is not implemented; transports only
advertise and accept "none".
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

EnvelopeCallback = Callable[[dict[str, Any]], None]

NONE = "none"


class TransportState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@runtime_checkable
class Transport(Protocol):
    """Interface the client consumes."""

    encryption: str
    compression: str
    on_envelope: EnvelopeCallback
    on_open: Callable[[], None]
    on_close: Callable[[], None]
    on_error: Callable[[BaseException], None]

    @property
    def is_connected(self) -> bool: ...

    async def open(self, uri: str) -> None:
        """Connect to ``uri``.

        Raises:
            ConnectionError: If the connection cannot be established
        """
        ...

    def send(self, envelope: dict[str, Any]) -> None:
        """Queue an envelope for writing. Never blocks."""
        ...

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        ...

    def get_supported_encryption(self) -> list[str]: ...

    def get_supported_compression(self) -> list[str]: ...

    def set_encryption(self, encryption: str) -> None: ...

    def set_compression(self, compression: str) -> None: ...


def _ignore(*args: Any) -> None:
    pass


class BaseTransport(ABC):
    """Base class for transports with common functionality.

    Provides:
    - State management
    - Background reader task feeding ``on_envelope``
    - Trace logging of every envelope when ``trace_enabled``

    Subclasses implement _do_open, _do_close, _do_send and _receive_envelopes.
    """

    def __init__(
        self,
        trace_enabled: bool = False,
        trace_logger: logging.Logger | None = None,
    ) -> None:
        self.trace_enabled = trace_enabled
        self._trace_logger = trace_logger or logger
        self._state = TransportState.DISCONNECTED
        self._reader_task: asyncio.Task[None] | None = None
        self._close_notified = True

        self.encryption = NONE
        self.compression = NONE

        self.on_envelope: EnvelopeCallback = _ignore
        self.on_open: Callable[[], None] = _ignore
        self.on_close: Callable[[], None] = _ignore
        self.on_error: Callable[[BaseException], None] = _ignore

    @property
    def state(self) -> TransportState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == TransportState.CONNECTED

    async def open(self, uri: str) -> None:
        """Connect and start the background reader."""
        if self._state in (TransportState.CONNECTING, TransportState.CONNECTED):
            raise ConnectionError(f"Transport is already {self._state.value}")

        self._state = TransportState.CONNECTING
        try:
            await self._do_open(uri)
        except Exception as e:
            self._state = TransportState.DISCONNECTED
            raise ConnectionError(f"Failed to connect to {uri}: {e}") from e

        if self._state != TransportState.CONNECTING:
            # close() ran while _do_open was pending
            with contextlib.suppress(Exception):
                await self._do_close()
            raise ConnectionError("Transport closed while connecting")

        self._state = TransportState.CONNECTED
        self._close_notified = False
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"{self.__class__.__name__} connected to {uri}")
        self.on_open()

    def send(self, envelope: dict[str, Any]) -> None:
        """Write an envelope."""
        if not self.is_connected:
            raise ConnectionError("Transport not connected")
        if self.trace_enabled:
            self._trace_logger.debug(f"{self.__class__.__name__} SEND: {envelope}")
        self._do_send(envelope)

    async def close(self) -> None:
        """Close the connection."""
        if self._state in (TransportState.DISCONNECTED, TransportState.CLOSED):
            return

        self._state = TransportState.CLOSED

        task, self._reader_task = self._reader_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._do_close()
        logger.info(f"{self.__class__.__name__} closed")
        self._notify_closed()

    def get_supported_encryption(self) -> list[str]:
        return [NONE]

    def get_supported_compression(self) -> list[str]:
        return [NONE]

    def set_encryption(self, encryption: str) -> None:
        if encryption not in self.get_supported_encryption():
            raise ValueError(f"Encryption '{encryption}' is not supported")
        self.encryption = encryption

    def set_compression(self, compression: str) -> None:
        if compression not in self.get_supported_compression():
            raise ValueError(f"Compression '{compression}' is not supported")
        self.compression = compression

    async def _read_loop(self) -> None:
        """Background task delivering inbound envelopes in order."""
        try:
            async for envelope in self._receive_envelopes():
                if self.trace_enabled:
                    self._trace_logger.debug(f"{self.__class__.__name__} RECEIVE: {envelope}")
                try:
                    self.on_envelope(envelope)
                except Exception:
                    logger.exception("Envelope callback raised")
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error(f"Read loop error: {e}")
            self.on_error(e)

        # Remote side closed the connection
        if self._state == TransportState.CONNECTED:
            self._state = TransportState.CLOSED
            self._reader_task = None
            with contextlib.suppress(Exception):
                await self._do_close()
            logger.info(f"{self.__class__.__name__} closed by remote")
            self._notify_closed()

    def _notify_closed(self) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        self.on_close()

    # Abstract methods for subclasses
    @abstractmethod
    async def _do_open(self, uri: str) -> None:
        """Implementation-specific connection logic."""
        ...

    @abstractmethod
    async def _do_close(self) -> None:
        """Implementation-specific disconnection logic."""
        ...

    @abstractmethod
    def _do_send(self, envelope: dict[str, Any]) -> None:
        """Implementation-specific send logic. Must not block."""
        ...

    @abstractmethod
    def _receive_envelopes(self) -> AsyncIterator[dict[str, Any]]:
        """Implementation-specific receive logic. Must be an async generator."""
        ...
