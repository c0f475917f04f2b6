"""Messaging hub client.

Session and message-routing layer for a LIME-style messaging hub:
- MessagingHubClient: connect, route envelopes to receivers, correlate commands
- TcpTransport / WebSocketTransport: wire transports
- Message / Notification / Command: envelope models
"""

from .client import ClientState, MessagingHubClient
from .config import ClientConfig
from .errors import (
    ArgumentError,
    CommandFailure,
    ConnectionClosedError,
    MessagingHubError,
    SessionFailedError,
)
from .protocol import (
    Command,
    CommandMethod,
    CommandStatus,
    Envelope,
    Message,
    Notification,
    NotificationEvent,
    Reason,
    Session,
)
from .receivers import ReceiverRegistry, RemovalToken
from .transport import TcpTransport, Transport, WebSocketTransport

__all__ = [
    # Client
    "MessagingHubClient",
    "ClientState",
    "ClientConfig",
    # Receivers
    "ReceiverRegistry",
    "RemovalToken",
    # Envelopes
    "Envelope",
    "Message",
    "Notification",
    "NotificationEvent",
    "Command",
    "CommandMethod",
    "CommandStatus",
    "Session",
    "Reason",
    # Transports
    "Transport",
    "TcpTransport",
    "WebSocketTransport",
    # Errors
    "MessagingHubError",
    "ArgumentError",
    "CommandFailure",
    "ConnectionClosedError",
    "SessionFailedError",
]

__version__ = "0.1.0"
