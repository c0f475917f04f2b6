"""Transport layer.

Moves JSON envelopes between the client and the hub:
- TCP - JSON objects back to back on a socket
- WebSocket - one JSON object per text frame

Both share BaseTransport, which owns the state machine, the background
reader and trace logging.
"""

from .base import BaseTransport, EnvelopeCallback, Transport, TransportState
from .framing import FramingError, JsonStreamDecoder
from .tcp import TcpTransport, parse_tcp_uri
from .websocket import WebSocketTransport

__all__ = [
    "Transport",
    "BaseTransport",
    "TransportState",
    "EnvelopeCallback",
    "TcpTransport",
    "WebSocketTransport",
    "JsonStreamDecoder",
    "FramingError",
    "parse_tcp_uri",
]
