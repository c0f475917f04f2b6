"""Messaging hub client.

Connects to the hub over any Transport, establishes an authenticated
session, and routes inbound envelopes:

- command responses complete the future returned by ``send_command``
- notifications go to the first matching notification receiver
- messages go to the first matching message receiver, with automatic
  received / consumed / failed notifications sent back to the hub
- anything else (including inbound command requests) is dropped

Usage:
    client = MessagingHubClient("127.0.0.1:55321", TcpTransport())
    client.add_message_receiver("text/plain", on_text)
    await client.connect_with_key("bot", "YWJjZGVm")
    response = await client.send_command({"method": "get", "uri": "/ping"})
    await client.close()

All routing happens synchronously inside the transport's envelope callback,
on the event loop thread. The only suspension points are the futures
returned to the application.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from enum import Enum
from typing import Any

from .config import ClientConfig
from .correlator import CommandCorrelator
from .errors import ArgumentError, ConnectionClosedError
from .protocol.envelope import (
    Command,
    Envelope,
    Message,
    Notification,
    Session,
    parse_envelope,
    to_envelope,
)
from .receivers import ReceiverCallback, ReceiverRegistry, RemovalToken
from .session import (
    Authentication,
    ClientChannel,
    GuestAuthentication,
    KeyAuthentication,
    PlainAuthentication,
)
from .transport.base import BaseTransport, Transport

logger = logging.getLogger(__name__)


class ClientState(str, Enum):
    """Client lifecycle."""

    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    BOOTSTRAPPING = "bootstrapping"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


_CONNECTABLE = (ClientState.DISCONNECTED, ClientState.FAILED)


class MessagingHubClient:
    """Session and routing layer on top of a transport.

    Args:
        uri: Hub address, in whatever form the transport accepts
        transport: Transport instance; the client installs its callbacks
        config: Client configuration (defaults to ClientConfig())
    """

    def __init__(
        self,
        uri: str,
        transport: Transport,
        config: ClientConfig | None = None,
    ) -> None:
        self.uri = uri
        self.config = config or ClientConfig()
        self._transport = transport
        self._state = ClientState.DISCONNECTED
        self._channel = ClientChannel(transport)
        self._message_receivers = ReceiverRegistry("type")
        self._notification_receivers = ReceiverRegistry("event")
        self._correlator = CommandCorrelator(self._send_envelope)
        self._background: set[asyncio.Task[Any]] = set()
        self._close_task: asyncio.Future[None] | None = None

        self.local_node: str | None = None

        transport.on_envelope = self._on_envelope
        transport.on_close = self._on_transport_close
        transport.on_error = self._on_transport_error
        if self.config.trace_enabled and isinstance(transport, BaseTransport):
            transport.trace_enabled = True

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ClientState.CONNECTED

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def message_receivers(self) -> ReceiverRegistry:
        return self._message_receivers

    @property
    def notification_receivers(self) -> ReceiverRegistry:
        return self._notification_receivers

    # =========================================================================
    # Connection
    # =========================================================================

    def connect_with_guest(self, identifier: str | None = None) -> asyncio.Task[None]:
        """Connect as a guest.

        Raises:
            ArgumentError: If ``identifier`` is missing
        """
        if not identifier:
            raise ArgumentError("The identifier is required")
        return self._start_connect(identifier, GuestAuthentication())

    def connect_with_password(
        self, identifier: str | None = None, password: str | None = None
    ) -> asyncio.Task[None]:
        """Connect with plain (password) authentication.

        Raises:
            ArgumentError: If ``identifier`` or ``password`` is missing
        """
        if not identifier:
            raise ArgumentError("The identifier is required")
        if not password:
            raise ArgumentError("The password is required")
        return self._start_connect(identifier, PlainAuthentication(password))

    def connect_with_key(
        self, identifier: str | None = None, key: str | None = None
    ) -> asyncio.Task[None]:
        """Connect with access key authentication.

        Raises:
            ArgumentError: If ``identifier`` or ``key`` is missing
        """
        if not identifier:
            raise ArgumentError("The identifier is required")
        if not key:
            raise ArgumentError("The key is required")
        return self._start_connect(identifier, KeyAuthentication(key))

    def _start_connect(
        self, identifier: str, authentication: Authentication
    ) -> asyncio.Task[None]:
        loop = asyncio.get_running_loop()
        if self._state == ClientState.CLOSED:
            raise ConnectionClosedError("Client is closed")
        if self._state not in _CONNECTABLE:
            raise RuntimeError(f"Client is already {self._state.value}")

        self._state = ClientState.AUTHENTICATING
        task = loop.create_task(self._connect(identifier, authentication))
        task.add_done_callback(_retrieve_connect_error)
        return task

    async def _connect(self, identifier: str, authentication: Authentication) -> None:
        identity = self.config.identity_for(identifier)
        try:
            await self._transport.open(self.uri)
            self._check_not_closed()
            self.local_node = await self._channel.establish_session(
                identity, self.config.instance, authentication
            )
            self._check_not_closed()
            self._state = ClientState.BOOTSTRAPPING
            self._bootstrap()
        except BaseException as e:
            if self._state == ClientState.CLOSED:
                if isinstance(e, Exception) and not isinstance(e, ConnectionClosedError):
                    raise ConnectionClosedError("Client closed while connecting") from e
            else:
                self._state = ClientState.FAILED
                logger.warning(f"Connection as {identity} failed: {e}")
                try:
                    await self._transport.close()
                except Exception:
                    logger.exception("Error closing transport after failed connect")
            raise

        self._state = ClientState.CONNECTED
        logger.info(f"Connected to {self.uri} as {self.local_node}")

    def _check_not_closed(self) -> None:
        # close() may run while the connect task is suspended
        if self._state == ClientState.CLOSED:
            raise ConnectionClosedError("Client closed while connecting")

    def _bootstrap(self) -> None:
        """Announce presence and subscribe to receipts.

        Both commands are sent before returning; their responses are only
        logged.
        """
        for command in (Command.presence(), Command.receipt()):
            future = self._correlator.send(command)
            future.add_done_callback(_log_bootstrap_response)

    async def close(self) -> None:
        """Finish the session and close the transport. Safe to call repeatedly."""
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._close())
        await asyncio.shield(self._close_task)

    async def _close(self) -> None:
        if self._channel.is_established and self._transport.is_connected:
            try:
                await asyncio.wait_for(
                    self._channel.finish_session(), timeout=self.config.close_timeout
                )
            except TimeoutError:
                logger.warning("Hub did not finish the session in time, closing anyway")
            except Exception as e:
                logger.debug(f"Finishing session failed: {e}")

        self._state = ClientState.CLOSED
        error = ConnectionClosedError("Connection closed")
        self._correlator.fail_all(error)
        self._channel.abort(error)
        await self._transport.close()
        logger.info("Client closed")

    async def __aenter__(self) -> MessagingHubClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # =========================================================================
    # Receivers
    # =========================================================================

    def add_message_receiver(self, predicate: Any, callback: ReceiverCallback) -> RemovalToken:
        """Register a message receiver.

        Args:
            predicate: Callable taking the message, a content type string,
                or None to receive every message
            callback: Called with the message. Raising makes the client send
                a "failed" notification; returning normally sends "consumed".
                The return value is ignored, so returning False still sends
                "consumed": raise to report a failure. Coroutine functions
                are awaited in the background.

        Returns:
            Token that removes the receiver when called
        """
        return self._message_receivers.add(predicate, callback)

    def add_notification_receiver(
        self, predicate: Any, callback: ReceiverCallback
    ) -> RemovalToken:
        """Register a notification receiver.

        Args:
            predicate: Callable taking the notification, an event name,
                or None to receive every notification
            callback: Called with the notification

        Returns:
            Token that removes the receiver when called
        """
        return self._notification_receivers.add(predicate, callback)

    def clear_message_receivers(self) -> None:
        self._message_receivers.clear()

    def clear_notification_receivers(self) -> None:
        self._notification_receivers.clear()

    # =========================================================================
    # Sending
    # =========================================================================

    def send_message(self, message: Message | dict[str, Any]) -> None:
        """Send a message (fire-and-forget)."""
        self._send_envelope(to_envelope(message, Message))

    def send_notification(self, notification: Notification | dict[str, Any]) -> None:
        """Send a notification (fire-and-forget)."""
        self._send_envelope(to_envelope(notification, Notification))

    def send_command(self, command: Command | dict[str, Any]) -> asyncio.Future[Command]:
        """Send a command and return a future for its response.

        The future fails with CommandFailure when the response status is not
        "success", and with ConnectionClosedError if the client closes first.
        """
        return self._correlator.send(to_envelope(command, Command))

    def _send_envelope(self, envelope: Envelope) -> None:
        if self._state == ClientState.CLOSED:
            raise ConnectionClosedError("Client is closed")
        self._transport.send(envelope.to_wire())

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _on_envelope(self, raw: dict[str, Any]) -> None:
        """Route one inbound envelope. Installed as the transport callback."""
        if self._state == ClientState.CLOSED:
            return

        envelope = parse_envelope(raw)
        if envelope is None:
            logger.debug(f"Dropping unroutable envelope: {raw!r:.120}")
            return

        if isinstance(envelope, Session):
            self._channel.receive_session(envelope)
        elif isinstance(envelope, Command):
            self._correlator.resolve(envelope)
        elif isinstance(envelope, Notification):
            self._process_notification(envelope)
        elif isinstance(envelope, Message):
            self._process_message(envelope)

    def _process_notification(self, notification: Notification) -> None:
        result = self._notification_receivers.dispatch(notification)
        if result.error is not None:
            logger.error(
                f"Notification receiver failed for {notification.event} "
                f"({notification.id}): {result.error}",
                exc_info=result.error,
            )
        elif result.pending is not None:
            self._spawn(self._await_notification_receiver(notification, result.pending))

    def _process_message(self, message: Message) -> None:
        self._notify(Notification.received(message))

        result = self._message_receivers.dispatch(message)
        if not result.matched:
            return
        if result.pending is not None:
            self._spawn(self._await_message_receiver(message, result.pending))
            return
        self._report_outcome(message, result.error)

    def _report_outcome(self, message: Message, error: BaseException | None) -> None:
        if error is None:
            self._notify(Notification.consumed(message))
            return
        logger.warning(f"Message receiver failed for {message.id}: {error}")
        self._notify(Notification.failed(message, error))

    async def _await_message_receiver(self, message: Message, pending: Awaitable[Any]) -> None:
        try:
            await pending
        except Exception as e:
            self._report_outcome(message, e)
            return
        self._report_outcome(message, None)

    async def _await_notification_receiver(
        self, notification: Notification, pending: Awaitable[Any]
    ) -> None:
        try:
            await pending
        except Exception:
            logger.exception(f"Notification receiver failed for {notification.event}")

    def _notify(self, notification: Notification) -> None:
        """Send a lifecycle notification; failures are logged, never raised."""
        try:
            self._send_envelope(notification)
        except Exception as e:
            logger.debug(f"Could not send '{notification.event}' notification: {e}")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================================
    # Transport callbacks
    # =========================================================================

    def _on_transport_close(self) -> None:
        error = ConnectionClosedError("Connection closed")
        self._correlator.fail_all(error)
        self._channel.abort(error)
        if self._state == ClientState.CONNECTED:
            logger.warning("Connection to hub lost")
            self._state = ClientState.DISCONNECTED

    def _on_transport_error(self, error: BaseException) -> None:
        logger.error(f"Transport error: {error}")
        # An established session survives until the transport actually closes
        if self._state == ClientState.AUTHENTICATING:
            self._channel.abort(error)


def _retrieve_connect_error(task: asyncio.Task[None]) -> None:
    """Mark the connect outcome as retrieved for callers that never await it.

    Awaiting the task still raises.
    """
    if not task.cancelled():
        task.exception()


def _log_bootstrap_response(future: asyncio.Future[Command]) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning(f"Session bootstrap command failed: {error}")
    else:
        response = future.result()
        logger.debug(f"Session bootstrap command {response.id} succeeded")
