"""Session handshake.

ClientChannel drives the client side of the session state machine:

    new -> [negotiating] -> authenticating -> established -> finishing -> finished
                                   \\-> failed

Negotiation only ever settles on "none" encryption and compression; the
transport decides what it supports. Authentication sends the selected scheme
and waits for the hub to establish (or fail) the session.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from .errors import SessionFailedError
from .protocol.envelope import Session, SessionState
from .transport.base import Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuestAuthentication:
    """Anonymous access; the hub accepts any identity."""

    scheme: ClassVar[str] = "guest"

    def to_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class PlainAuthentication:
    """Password authentication. The password is base64-encoded on the wire."""

    password: str
    scheme: ClassVar[str] = "plain"

    def to_dict(self) -> dict[str, Any]:
        encoded = base64.b64encode(self.password.encode("utf-8")).decode("ascii")
        return {"password": encoded}

    def __repr__(self) -> str:
        return "PlainAuthentication(password=***)"


@dataclass(frozen=True)
class KeyAuthentication:
    """Access key authentication. The key is sent as given (already base64)."""

    key: str
    scheme: ClassVar[str] = "key"

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key}

    def __repr__(self) -> str:
        return "KeyAuthentication(key=***)"


Authentication = GuestAuthentication | PlainAuthentication | KeyAuthentication


class ClientChannel:
    """Client side of the session handshake over a transport.

    Session envelopes received from the hub must be fed to
    ``receive_session``; the channel answers them through the transport.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._state = SessionState.NEW
        self._waiter: asyncio.Future[str | None] | None = None
        self._from: str | None = None
        self._authentication: Authentication | None = None

        self.session_id: str | None = None
        self.local_node: str | None = None
        self.remote_node: str | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_established(self) -> bool:
        return self._state == SessionState.ESTABLISHED

    async def establish_session(
        self,
        identity: str,
        instance: str,
        authentication: Authentication,
    ) -> str:
        """Run the handshake until the hub establishes the session.

        Args:
            identity: Qualified identity, e.g. ``bob@msging.net``
            instance: Instance name of this node
            authentication: Scheme and credentials

        Returns:
            The local node address assigned by the hub

        Raises:
            SessionFailedError: If the hub fails the session
        """
        if self._waiter is not None and not self._waiter.done():
            raise RuntimeError("Session handshake already in progress")

        self._from = f"{identity}/{instance}" if instance else identity
        self._authentication = authentication
        self._state = SessionState.NEW
        self.session_id = None

        waiter = self._new_waiter()
        self._send(Session(state=SessionState.NEW.value))
        local_node = await waiter
        return local_node or self._from

    async def finish_session(self) -> None:
        """Ask the hub to finish the session and wait until it does."""
        if self._state != SessionState.ESTABLISHED:
            return

        waiter = self._new_waiter()
        self._state = SessionState.FINISHING
        self._send(Session(id=self.session_id, state=SessionState.FINISHING.value))
        await waiter

    def receive_session(self, session: Session) -> None:
        """Advance the state machine with an envelope from the hub."""
        if session.id:
            self.session_id = session.id

        state = session.state
        if state == SessionState.NEGOTIATING.value:
            self._negotiate(session)
        elif state == SessionState.AUTHENTICATING.value:
            self._authenticate(session)
        elif state == SessionState.ESTABLISHED.value:
            self._state = SessionState.ESTABLISHED
            self.local_node = session.to
            self.remote_node = session.from_
            logger.info(f"Session {self.session_id} established as {self.local_node}")
            self._complete(session.to)
        elif state == SessionState.FINISHED.value:
            self._state = SessionState.FINISHED
            logger.info(f"Session {self.session_id} finished")
            self._complete(None)
        elif state == SessionState.FAILED.value:
            self._state = SessionState.FAILED
            reason = session.reason
            description = reason.description if reason else "no reason given"
            logger.warning(f"Session {self.session_id} failed: {description}")
            self._fail(SessionFailedError(f"Session failed: {description}", reason))
        else:
            logger.warning(f"Unexpected session state from hub: {state}")

    def abort(self, error: BaseException) -> None:
        """Fail an in-progress handshake (transport closed or errored)."""
        if self._state not in (SessionState.FINISHED, SessionState.FAILED):
            self._state = SessionState.FAILED
        self._fail(error)

    def _negotiate(self, session: Session) -> None:
        self._state = SessionState.NEGOTIATING

        if session.encryption_options is not None or session.compression_options is not None:
            try:
                encryption = _choose(
                    session.encryption_options, self._transport.get_supported_encryption()
                )
                compression = _choose(
                    session.compression_options, self._transport.get_supported_compression()
                )
            except ValueError as e:
                self._fail(SessionFailedError(str(e)))
                return
            self._send(
                Session(
                    id=self.session_id,
                    state=SessionState.NEGOTIATING.value,
                    encryption=encryption,
                    compression=compression,
                )
            )
            return

        # Hub confirmed the negotiated options
        try:
            if session.encryption:
                self._transport.set_encryption(session.encryption)
            if session.compression:
                self._transport.set_compression(session.compression)
        except ValueError as e:
            self._fail(SessionFailedError(str(e)))

    def _authenticate(self, session: Session) -> None:
        self._state = SessionState.AUTHENTICATING
        authentication = self._authentication or GuestAuthentication()

        if session.scheme_options and authentication.scheme not in session.scheme_options:
            logger.debug(
                f"Scheme '{authentication.scheme}' not offered by hub "
                f"(options: {session.scheme_options}), sending anyway"
            )

        self._send(
            Session(
                id=self.session_id,
                from_=self._from,
                state=SessionState.AUTHENTICATING.value,
                scheme=authentication.scheme,
                authentication=authentication.to_dict(),
            )
        )

    def _send(self, session: Session) -> None:
        try:
            self._transport.send(session.to_wire())
        except Exception as e:
            self._fail(e)

    def _new_waiter(self) -> asyncio.Future[str | None]:
        self._waiter = asyncio.get_running_loop().create_future()
        return self._waiter

    def _complete(self, result: str | None) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(result)

    def _fail(self, error: BaseException) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(error)


def _choose(offered: list[str] | None, supported: list[str]) -> str:
    if not offered:
        return supported[0]
    for option in offered:
        if option in supported:
            return option
    raise ValueError(f"None of the offered options {offered} is supported")
