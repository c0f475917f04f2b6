"""Exception types raised by the messaging hub client."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol.envelope import Command, Reason


class MessagingHubError(Exception):
    """Base class for all client errors."""

    pass


class ArgumentError(MessagingHubError, ValueError):
    """A required connection argument is missing.

    Raised synchronously at the call site, before any network I/O happens.
    """

    pass


class CommandFailure(MessagingHubError):
    """A command response came back with a non-success status.

    The full response envelope is available as ``command``.
    """

    def __init__(self, command: Command) -> None:
        self.command = command
        reason = command.reason
        detail = f": {reason.description}" if reason and reason.description else ""
        super().__init__(f"Command {command.id} failed with status '{command.status}'{detail}")

    @property
    def status(self) -> str | None:
        return self.command.status

    @property
    def reason(self) -> Reason | None:
        return self.command.reason


class ConnectionClosedError(MessagingHubError, ConnectionError):
    """The connection was closed while a command was still waiting for its response."""

    pass


class SessionFailedError(MessagingHubError, ConnectionError):
    """The hub refused or aborted the session handshake."""

    def __init__(self, message: str, reason: Reason | None = None) -> None:
        self.reason = reason
        super().__init__(message)
