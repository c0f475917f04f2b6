"""Request/response correlation for outbound commands.

Each outbound command is registered under its ``id`` before it is
transmitted. When a response with the same ``id`` arrives, the waiting
future is completed and the entry is removed, so at most one response is
ever delivered per command.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import CommandFailure
from .protocol.envelope import Command

logger = logging.getLogger(__name__)


@dataclass
class PendingCommand:
    """A command waiting for its response."""

    command: Command
    future: asyncio.Future[Command]


class CommandCorrelator:
    """Maps outstanding command ids to the futures waiting for their responses.

    Args:
        send_fn: Transmits a command; called after the waiter is registered
    """

    def __init__(self, send_fn: Callable[[Command], Any]) -> None:
        self._send_fn = send_fn
        self._pending: dict[str, PendingCommand] = {}

    @property
    def pending(self) -> int:
        """Number of commands still waiting for a response."""
        return len(self._pending)

    def is_pending(self, command_id: str) -> bool:
        return command_id in self._pending

    def send(self, command: Command) -> asyncio.Future[Command]:
        """Register and transmit ``command``.

        A missing ``id`` is filled with a new uuid. The caller is responsible
        for not reusing an id that is still pending.

        Returns:
            Future completed with the success response, or failed with
            CommandFailure for any other status
        """
        if not command.id:
            command.id = str(uuid.uuid4())

        future: asyncio.Future[Command] = asyncio.get_running_loop().create_future()
        self._pending[command.id] = PendingCommand(command=command, future=future)

        try:
            self._send_fn(command)
        except Exception as e:
            self._pending.pop(command.id, None)
            future.set_exception(e)

        return future

    def resolve(self, response: Command) -> bool:
        """Complete the waiter for ``response.id``.

        Returns:
            True if a pending command was resolved, False if none matched
        """
        pending = self._pending.pop(response.id, None) if response.id else None
        if pending is None:
            logger.debug(f"No pending command for response {response.id}")
            return False

        if pending.future.done():
            return False

        if response.is_success():
            pending.future.set_result(response)
        else:
            pending.future.set_exception(CommandFailure(response))
        return True

    def fail_all(self, error: BaseException) -> None:
        """Fail every pending command with ``error`` and forget them."""
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(error)
        if pending:
            logger.debug(f"Failed {len(pending)} pending command(s): {error}")
