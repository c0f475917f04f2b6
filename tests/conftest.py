"""Pytest configuration and shared fixtures.

FakeHub is an in-memory hub speaking the envelope protocol, and
LoopbackTransport connects a client to it without sockets. Replies from the
hub are queued and delivered by the transport's reader task, so envelopes
arrive asynchronously, as they would over a network.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio

from messaging_hub import MessagingHubClient
from messaging_hub.transport.base import BaseTransport

HUB_NODE = "postmaster@msging.net/hub"


# =============================================================================
# Loopback transport
# =============================================================================


class LoopbackTransport(BaseTransport):
    """Transport wired directly to a FakeHub."""

    def __init__(self, hub: FakeHub, trace_enabled: bool = False) -> None:
        super().__init__(trace_enabled=trace_enabled)
        self.hub = hub
        self.opened_uris: list[str] = []
        self._inbox: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def deliver(self, envelope: dict[str, Any]) -> None:
        """Queue an envelope from the hub."""
        self._inbox.put_nowait(copy.deepcopy(envelope))

    def hang_up(self) -> None:
        """Simulate the hub dropping the connection."""
        self._inbox.put_nowait(None)

    async def _do_open(self, uri: str) -> None:
        self.opened_uris.append(uri)
        self._inbox = asyncio.Queue()
        self.hub.attach(self)

    async def _do_close(self) -> None:
        self.hub.detach(self)
        self._inbox.put_nowait(None)

    def _do_send(self, envelope: dict[str, Any]) -> None:
        self.hub.receive(self, copy.deepcopy(envelope))

    async def _receive_envelopes(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            envelope = await self._inbox.get()
            if envelope is None:
                return
            yield envelope


# =============================================================================
# Fake hub
# =============================================================================


class FakeHub:
    """Minimal hub behavior used by the client tests.

    - session: optional negotiation, then authentication, then established
    - set /presence, set /receipt, get /ping: success
    - commands to ``silent_uris``: never answered
    - any other command: failure
    - message with content "ping": answered with a "pong" message
    - notification "ping": answered with a "pong" notification
    - any other notification: echoed back to the sender
    """

    def __init__(self) -> None:
        self.connections: list[LoopbackTransport] = []
        self.received: list[dict[str, Any]] = []
        self.negotiate = False
        self.fail_authentication = False
        self.finish_sessions = True
        self.silent_uris: set[str] = set()

    # -- inspection ----------------------------------------------------------

    def _of_kind(self, field: str) -> list[dict[str, Any]]:
        return [e for e in self.received if field in e and "state" not in e]

    @property
    def sessions(self) -> list[dict[str, Any]]:
        return [e for e in self.received if "state" in e]

    @property
    def commands(self) -> list[dict[str, Any]]:
        return self._of_kind("method")

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [e for e in self._of_kind("content") if "event" not in e]

    @property
    def notifications(self) -> list[dict[str, Any]]:
        return self._of_kind("event")

    def command_for(self, uri: str) -> dict[str, Any]:
        return next(c for c in self.commands if c.get("uri") == uri)

    # -- connection management -------------------------------------------------

    def attach(self, transport: LoopbackTransport) -> None:
        self.connections.append(transport)

    def detach(self, transport: LoopbackTransport) -> None:
        if transport in self.connections:
            self.connections.remove(transport)

    def broadcast(self, envelope: dict[str, Any]) -> None:
        for transport in list(self.connections):
            transport.deliver(envelope)

    def hang_up_all(self) -> None:
        for transport in list(self.connections):
            transport.hang_up()

    # -- protocol --------------------------------------------------------------

    def receive(self, transport: LoopbackTransport, envelope: dict[str, Any]) -> None:
        self.received.append(envelope)
        if "state" in envelope:
            self._on_session(transport, envelope)
        elif "method" in envelope:
            self._on_command(transport, envelope)
        elif "event" in envelope:
            self._on_notification(transport, envelope)
        elif "content" in envelope:
            self._on_message(transport, envelope)

    def _on_session(self, transport: LoopbackTransport, session: dict[str, Any]) -> None:
        state = session["state"]
        session_id = session.get("id") or "session-1"

        if state == "new":
            if self.negotiate:
                transport.deliver(
                    {
                        "id": session_id,
                        "from": HUB_NODE,
                        "state": "negotiating",
                        "encryptionOptions": ["none", "tls"],
                        "compressionOptions": ["none", "gzip"],
                    }
                )
            else:
                self._ask_authentication(transport, session_id)
        elif state == "negotiating":
            transport.deliver(
                {
                    "id": session_id,
                    "from": HUB_NODE,
                    "state": "negotiating",
                    "encryption": session["encryption"],
                    "compression": session["compression"],
                }
            )
            self._ask_authentication(transport, session_id)
        elif state == "authenticating":
            if self.fail_authentication:
                transport.deliver(
                    {
                        "id": session_id,
                        "from": HUB_NODE,
                        "state": "failed",
                        "reason": {"code": 13, "description": "The authentication failed"},
                    }
                )
            else:
                transport.deliver(
                    {
                        "id": session_id,
                        "from": HUB_NODE,
                        "to": session["from"],
                        "state": "established",
                    }
                )
        elif state == "finishing" and self.finish_sessions:
            transport.deliver({"id": session_id, "from": HUB_NODE, "state": "finished"})

    def _ask_authentication(self, transport: LoopbackTransport, session_id: str) -> None:
        transport.deliver(
            {
                "id": session_id,
                "from": HUB_NODE,
                "state": "authenticating",
                "schemeOptions": ["guest", "plain", "key"],
            }
        )

    def _on_command(self, transport: LoopbackTransport, command: dict[str, Any]) -> None:
        method = command["method"]
        uri = command.get("uri")
        if uri in self.silent_uris:
            return

        response: dict[str, Any] = {"id": command["id"], "method": method}
        if (method, uri) in (("set", "/presence"), ("set", "/receipt"), ("get", "/ping")):
            response["status"] = "success"
        else:
            response["status"] = "failure"
            response["reason"] = {"code": 67, "description": "Resource not found"}
        transport.deliver(response)

    def _on_message(self, transport: LoopbackTransport, message: dict[str, Any]) -> None:
        if message.get("content") == "ping":
            transport.deliver({"type": "text/plain", "content": "pong"})

    def _on_notification(self, transport: LoopbackTransport, notification: dict[str, Any]) -> None:
        if notification["event"] == "ping":
            transport.deliver({"event": "pong"})
        else:
            transport.deliver(notification)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def hub() -> FakeHub:
    return FakeHub()


@pytest.fixture
def transport(hub: FakeHub) -> LoopbackTransport:
    return LoopbackTransport(hub)


@pytest_asyncio.fixture
async def client(transport: LoopbackTransport) -> AsyncIterator[MessagingHubClient]:
    client = MessagingHubClient("loopback://hub", transport)
    yield client
    await client.close()


async def wait_for(event: asyncio.Event, timeout: float = 1.0) -> None:
    """Wait for ``event`` or fail the test."""
    await asyncio.wait_for(event.wait(), timeout=timeout)


async def settle(rounds: int = 5) -> None:
    """Let queued envelopes be delivered and processed."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(condition: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``condition`` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)
