"""Receiver registries for inbound messages and notifications.

A registry is an ordered list of (predicate, callback) entries. When an
envelope is dispatched, entries are tried in insertion order and only the
first one whose predicate accepts the envelope is invoked.

Usage:
    registry = ReceiverRegistry("type")
    remove = registry.add("text/plain", on_text)
    registry.add(lambda m: m.content == "ping", on_ping)
    registry.add(None, on_anything_else)
    ...
    remove()
"""

from __future__ import annotations

import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .protocol.envelope import Envelope

logger = logging.getLogger(__name__)

Predicate = Callable[[Envelope], Any]
ReceiverCallback = Callable[[Envelope], Any]


def _always(envelope: Envelope) -> bool:
    return True


def make_predicate(value: Any, match_field: str) -> Predicate:
    """Normalize a predicate given at registration time.

    - None matches every envelope
    - a callable is used as-is
    - any other value matches envelopes whose ``match_field`` equals it
    """
    if value is None:
        return _always
    if callable(value):
        return value

    expected = value.value if isinstance(value, Enum) else value

    def exact(envelope: Envelope) -> bool:
        return getattr(envelope, match_field, None) == expected

    return exact


@dataclass(frozen=True)
class ReceiverEntry:
    """A registered receiver."""

    handle: int
    predicate: Predicate
    callback: ReceiverCallback


@dataclass
class DispatchResult:
    """Outcome of dispatching one envelope.

    ``matched`` is False when no predicate accepted the envelope. When the
    callback raised, the exception is in ``error``. When the callback
    returned an awaitable, it is in ``pending`` and has not run yet.
    """

    matched: bool
    error: BaseException | None = None
    pending: Awaitable[Any] | None = None


class RemovalToken:
    """Removes one receiver from its registry when called.

    Calling it more than once, or after the registry was cleared, does nothing.
    """

    def __init__(self, registry: ReceiverRegistry, handle: int) -> None:
        self._registry = registry
        self._handle = handle

    def __call__(self) -> None:
        self._registry._remove(self._handle)

    def remove(self) -> None:
        self()


class ReceiverRegistry:
    """Ordered (predicate, callback) entries for one envelope category.

    All access happens on the event loop thread, so the registry holds no lock.
    """

    def __init__(self, match_field: str) -> None:
        self._match_field = match_field
        self._entries: list[ReceiverEntry] = []
        self._handles = itertools.count(1)

    @property
    def entries(self) -> tuple[ReceiverEntry, ...]:
        """Snapshot of the registered entries in insertion order."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, predicate: Any, callback: ReceiverCallback) -> RemovalToken:
        """Register a receiver.

        Args:
            predicate: Callable, literal value matched against the registry's
                field, or None to match everything
            callback: Called with the matching envelope. Its return value is
                ignored; only a raised exception is reported as a failure

        Returns:
            Token that removes this receiver when called
        """
        if not callable(callback):
            raise TypeError("Receiver callback must be callable")

        entry = ReceiverEntry(
            handle=next(self._handles),
            predicate=make_predicate(predicate, self._match_field),
            callback=callback,
        )
        self._entries.append(entry)
        return RemovalToken(self, entry.handle)

    def clear(self) -> None:
        """Remove every receiver."""
        # Rebind rather than mutate so a dispatch in progress keeps its own view
        self._entries = []

    def _remove(self, handle: int) -> None:
        self._entries = [e for e in self._entries if e.handle != handle]

    def dispatch(self, envelope: Envelope) -> DispatchResult:
        """Invoke the first receiver whose predicate accepts ``envelope``."""
        # Entries added while this dispatch runs are not visited
        for entry in tuple(self._entries):
            try:
                accepted = entry.predicate(envelope)
            except Exception:
                logger.exception(f"Receiver predicate raised for envelope {envelope.id}")
                continue
            if not accepted:
                continue

            try:
                result = entry.callback(envelope)
            except Exception as e:
                return DispatchResult(matched=True, error=e)

            if inspect.isawaitable(result):
                return DispatchResult(matched=True, pending=result)
            return DispatchResult(matched=True)

        return DispatchResult(matched=False)
