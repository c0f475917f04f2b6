"""Envelope definitions for the hub protocol.

Every unit exchanged with the hub is an envelope. There are four kinds:
- Message: application content addressed to a node
- Notification: lifecycle event about a previously sent message
- Command: request/response against a resource on the hub
- Session: handshake and teardown of the session itself

Envelopes travel as plain JSON objects. The kind of an envelope is not
tagged explicitly on the wire; it is inferred from which fields are present
(see ``classify``).

Example (message):
    {"id": "1", "from": "bob@msging.net/home", "type": "text/plain", "content": "hi"}

Example (notification):
    {"id": "1", "to": "bob@msging.net/home", "event": "received"}

Example (command response):
    {"id": "cmd-1", "method": "get", "status": "failure",
     "reason": {"code": 67, "description": "Resource not found"}}
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

# Reason code sent in "failed" notifications when a message receiver raises.
HANDLER_FAILURE_CODE = 101

PRESENCE_TYPE = "application/vnd.lime.presence+json"
RECEIPT_TYPE = "application/vnd.lime.receipt+json"


class EnvelopeKind(str, Enum):
    """Envelope categories, in classification order."""

    SESSION = "session"
    COMMAND_RESPONSE = "command_response"
    NOTIFICATION = "notification"
    MESSAGE = "message"


class NotificationEvent(str, Enum):
    """Standard notification events."""

    ACCEPTED = "accepted"
    VALIDATED = "validated"
    AUTHORIZED = "authorized"
    DISPATCHED = "dispatched"
    RECEIVED = "received"
    CONSUMED = "consumed"
    FAILED = "failed"


class CommandMethod(str, Enum):
    """Command methods."""

    GET = "get"
    SET = "set"
    DELETE = "delete"
    OBSERVE = "observe"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    MERGE = "merge"


class CommandStatus(str, Enum):
    """Status of a command response."""

    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class SessionState(str, Enum):
    """States of the session handshake."""

    NEW = "new"
    NEGOTIATING = "negotiating"
    AUTHENTICATING = "authenticating"
    ESTABLISHED = "established"
    FINISHING = "finishing"
    FINISHED = "finished"
    FAILED = "failed"


def _value(item: str | Enum) -> str:
    return item.value if isinstance(item, Enum) else item


class Reason(BaseModel):
    """Why a notification, command or session failed."""

    code: int
    description: str | None = None


class Envelope(BaseModel):
    """Fields shared by every envelope.

    Unknown wire fields are kept as extras so that round-tripping an
    envelope through the client never loses information.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = None
    from_: str | None = Field(default=None, alias="from")
    to: str | None = None
    pp: str | None = None
    metadata: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-ready dict sent on the wire."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Message(Envelope):
    """Application content sent to or from a node."""

    type: str
    content: Any


class Notification(Envelope):
    """Event about a message, correlated to it by ``id``."""

    event: str
    reason: Reason | None = None

    @classmethod
    def create(
        cls,
        event: str | NotificationEvent,
        message: Message,
        reason: Reason | None = None,
    ) -> Notification:
        """Create a notification correlated to ``message``."""
        return cls(
            id=message.id,
            to=message.from_,
            event=_value(event),
            reason=reason,
        )

    @classmethod
    def received(cls, message: Message) -> Notification:
        return cls.create(NotificationEvent.RECEIVED, message)

    @classmethod
    def consumed(cls, message: Message) -> Notification:
        return cls.create(NotificationEvent.CONSUMED, message)

    @classmethod
    def failed(cls, message: Message, error: BaseException) -> Notification:
        """Create the notification reporting that a receiver raised ``error``."""
        return cls.create(
            NotificationEvent.FAILED,
            message,
            reason=Reason(code=HANDLER_FAILURE_CODE, description=str(error)),
        )


class Command(Envelope):
    """A request against a hub resource, or the response to one.

    Requests carry ``method`` and ``uri``; responses echo the request ``id``
    and ``method`` and add ``status`` (plus ``reason`` on failure).
    """

    method: str
    uri: str | None = None
    type: str | None = None
    resource: Any = None
    status: str | None = None
    reason: Reason | None = None

    def is_response(self) -> bool:
        return self.status is not None

    def is_success(self) -> bool:
        return self.status == CommandStatus.SUCCESS.value

    @classmethod
    def create(
        cls,
        method: str | CommandMethod,
        uri: str,
        resource: Any = None,
        resource_type: str | None = None,
        command_id: str | None = None,
    ) -> Command:
        """Factory method for request commands."""
        return cls(
            id=command_id,
            method=_value(method),
            uri=uri,
            type=resource_type,
            resource=resource,
        )

    @classmethod
    def presence(cls) -> Command:
        """Announce this node as available, routed by identity."""
        return cls.create(
            CommandMethod.SET,
            "/presence",
            resource={"status": "available", "routingRule": "identity"},
            resource_type=PRESENCE_TYPE,
        )

    @classmethod
    def receipt(cls) -> Command:
        """Ask the hub to deliver notifications for messages sent by this node."""
        return cls.create(
            CommandMethod.SET,
            "/receipt",
            resource={
                "events": [
                    NotificationEvent.FAILED.value,
                    NotificationEvent.ACCEPTED.value,
                    NotificationEvent.DISPATCHED.value,
                    NotificationEvent.RECEIVED.value,
                    NotificationEvent.CONSUMED.value,
                ]
            },
            resource_type=RECEIPT_TYPE,
        )


class Session(Envelope):
    """Handshake envelope exchanged while opening or closing a session."""

    state: str
    encryption_options: list[str] | None = Field(default=None, alias="encryptionOptions")
    encryption: str | None = None
    compression_options: list[str] | None = Field(default=None, alias="compressionOptions")
    compression: str | None = None
    scheme_options: list[str] | None = Field(default=None, alias="schemeOptions")
    scheme: str | None = None
    authentication: dict[str, Any] | None = None
    reason: Reason | None = None


E = TypeVar("E", bound=Envelope)

_MODELS: dict[EnvelopeKind, type[Envelope]] = {
    EnvelopeKind.SESSION: Session,
    EnvelopeKind.COMMAND_RESPONSE: Command,
    EnvelopeKind.NOTIFICATION: Notification,
    EnvelopeKind.MESSAGE: Message,
}


def classify(raw: dict[str, Any]) -> EnvelopeKind | None:
    """Infer the kind of an inbound envelope from its fields.

    Order matters: a command response also has an ``id``, and a notification
    may carry arbitrary extra fields, so the first matching rule wins.
    Inbound command requests (no ``status``) are not routable and yield None.
    """
    if "state" in raw:
        return EnvelopeKind.SESSION
    if "id" in raw and "status" in raw:
        return EnvelopeKind.COMMAND_RESPONSE
    if "event" in raw:
        return EnvelopeKind.NOTIFICATION
    if "content" in raw:
        return EnvelopeKind.MESSAGE
    return None


def parse_envelope(raw: dict[str, Any]) -> Envelope | None:
    """Classify and validate an inbound envelope.

    Returns None for envelopes that are not routable or fail validation.
    """
    if not isinstance(raw, dict):
        logger.warning(f"Dropping non-object envelope: {raw!r:.80}")
        return None

    kind = classify(raw)
    if kind is None:
        return None

    try:
        return _MODELS[kind].model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Dropping malformed {kind.value} envelope: {e}")
        return None


def to_envelope(value: E | dict[str, Any], model: type[E]) -> E:
    """Accept either a model instance or a plain dict for outbound envelopes."""
    if isinstance(value, model):
        return value
    return model.model_validate(value)
