"""EventSub WebSocket message envelope."""

from __future__ import annotations

from enum import Enum
from typing import Any
from typing import Dict
from typing import Optional
from typing import Union

from pydantic import Field
from pydantic import field_validator

from twitchhelix.codec import decode
from twitchhelix.codec import decode_value
from twitchhelix.errors import DecodeError
from twitchhelix.models import HelixBaseModel
from twitchhelix.models import Subscription
from twitchhelix.models import Timestamp


class MessageType(str, Enum):
    """Value of ``metadata.message_type``."""
    SESSION_WELCOME = "session_welcome"
    SESSION_KEEPALIVE = "session_keepalive"
    SESSION_RECONNECT = "session_reconnect"
    NOTIFICATION = "notification"
    REVOCATION = "revocation"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> MessageType:
        return cls.UNKNOWN


class MessageMetadata(HelixBaseModel):
    message_id: str
    message_type: MessageType
    message_timestamp: Optional[Timestamp] = None
    subscription_type: Optional[str] = None
    subscription_version: Optional[str] = None

    @field_validator("message_type", mode="before")
    @classmethod
    def _decode_type(cls, value: Any) -> MessageType:
        return MessageType(value)


class SessionPayload(HelixBaseModel):
    """``payload.session`` of welcome and reconnect messages.

    ``status`` is the session's own status (``connected``, ``reconnecting``),
    not a shard status, so it stays a plain string.
    """
    id: str
    status: str = ""
    keepalive_timeout_seconds: Optional[int] = None
    reconnect_url: Optional[str] = None
    connected_at: Optional[Timestamp] = None


class SocketMessage(HelixBaseModel):
    """One inbound frame."""
    metadata: MessageMetadata
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def message_id(self) -> str:
        return self.metadata.message_id

    @property
    def message_type(self) -> MessageType:
        return self.metadata.message_type

    def session(self) -> SessionPayload:
        """Decode ``payload.session``.

        Raises:
            DecodeError: Missing or malformed session block
        """
        return decode_value(self.payload.get("session"), SessionPayload)

    def subscription(self) -> Subscription:
        """Decode ``payload.subscription``.

        Raises:
            DecodeError: Missing or malformed subscription block
        """
        return decode_value(self.payload.get("subscription"), Subscription)

    def event(self) -> Dict[str, Any]:
        """Raw ``payload.event`` of a notification."""
        event = self.payload.get("event")
        if not isinstance(event, dict):
            raise DecodeError("Notification has no event payload", data=self.payload)
        return event


def parse_message(raw: Union[str, bytes]) -> SocketMessage:
    """Decode one WebSocket text frame.

    Raises:
        DecodeError: Malformed JSON or envelope
    """
    return decode(raw, SocketMessage)
