"""Wire-level protocol types.

Key concepts:
- Envelope: one unit exchanged with the hub
- Message / Notification / Command: routed by the client's dispatch engine
- Session: handshake envelopes, consumed by the session channel
- classify / parse_envelope: infer an inbound envelope's kind from its fields
"""

from .envelope import (
    HANDLER_FAILURE_CODE,
    Command,
    CommandMethod,
    CommandStatus,
    Envelope,
    EnvelopeKind,
    Message,
    Notification,
    NotificationEvent,
    Reason,
    Session,
    SessionState,
    classify,
    parse_envelope,
)

__all__ = [
    "HANDLER_FAILURE_CODE",
    "Envelope",
    "EnvelopeKind",
    "Message",
    "Notification",
    "NotificationEvent",
    "Command",
    "CommandMethod",
    "CommandStatus",
    "Session",
    "SessionState",
    "Reason",
    "classify",
    "parse_envelope",
]
