"""Framing for stream transports.

Stream transports (TCP) carry envelopes as JSON objects written back to back
with no delimiter. Chunks read from the socket may split an object anywhere,
or contain several objects; JsonStreamDecoder reassembles them by tracking
brace depth outside of string literals.
"""

from __future__ import annotations

import codecs
import json
from typing import Any

DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024


class FramingError(ValueError):
    """The byte stream does not contain valid JSON objects."""

    pass


class JsonStreamDecoder:
    """Incremental decoder for concatenated JSON objects.

    Usage:
        decoder = JsonStreamDecoder()
        for chunk in chunks:
            for envelope in decoder.feed(chunk):
                handle(envelope)
    """

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE) -> None:
        self._max_buffer_size = max_buffer_size
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        # Scan state, kept across feeds so each character is inspected once
        self._pos = 0
        self._start = -1
        self._depth = 0
        self._in_string = False
        self._escaped = False

    @property
    def buffered(self) -> int:
        """Characters received but not yet decoded."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        """Add ``data`` and return every object completed by it."""
        self._buffer += self._utf8.decode(data)
        objects: list[dict[str, Any]] = []

        while self._pos < len(self._buffer):
            ch = self._buffer[self._pos]
            self._pos += 1

            if self._start < 0:
                if ch.isspace():
                    continue
                if ch != "{":
                    raise FramingError(f"Unexpected character {ch!r} between envelopes")
                self._start = self._pos - 1
                self._depth = 1
                continue

            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif ch == "\\":
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
                continue

            if ch == '"':
                self._in_string = True
            elif ch == "{":
                self._depth += 1
            elif ch == "}":
                self._depth -= 1
                if self._depth == 0:
                    objects.append(self._take())

        if self._start < 0:
            # Only whitespace left between objects
            self._buffer = ""
            self._pos = 0

        if self.buffered > self._max_buffer_size:
            raise FramingError(f"Envelope exceeds {self._max_buffer_size} characters")

        return objects

    def _take(self) -> dict[str, Any]:
        text = self._buffer[self._start : self._pos]
        self._buffer = self._buffer[self._pos :]
        self._pos = 0
        self._start = -1
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise FramingError(f"Invalid envelope JSON: {e}") from e

    def reset(self) -> None:
        """Drop any partially received data."""
        self._utf8.reset()
        self._buffer = ""
        self._pos = 0
        self._start = -1
        self._depth = 0
        self._in_string = False
        self._escaped = False


def encode(envelope: dict[str, Any]) -> bytes:
    """Serialize an envelope for a stream transport."""
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")
