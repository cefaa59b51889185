"""EventSub subscription-type catalog.

Each subscription type is a row in a lookup table keyed by ``(name, version)``
rather than its own class. A row names the condition and event schemas; the
event schema drives decoding of notification payloads. Types missing from the
table still decode, to a plain dict, so new platform types never break a
session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Iterator
from typing import Optional
from typing import Tuple
from typing import Type

from pydantic import BaseModel
from pydantic import ConfigDict

from twitchhelix.codec import decode_value
from twitchhelix.models import Timestamp


class EventSubModel(BaseModel):
    """Base for condition and event schemas; unknown fields are preserved."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


# ============================================================================
# Conditions
# ============================================================================

class BroadcasterCondition(EventSubModel):
    broadcaster_user_id: str


class ChannelChatCondition(EventSubModel):
    broadcaster_user_id: str
    user_id: str


class ChannelFollowCondition(EventSubModel):
    broadcaster_user_id: str
    moderator_user_id: str


class ChannelRaidCondition(EventSubModel):
    from_broadcaster_user_id: Optional[str] = None
    to_broadcaster_user_id: Optional[str] = None


# ============================================================================
# Events
# ============================================================================

class BroadcasterEvent(EventSubModel):
    broadcaster_user_id: str
    broadcaster_user_login: str
    broadcaster_user_name: str


class ChatMessage(EventSubModel):
    text: str
    fragments: list = []


class ChannelChatMessageEvent(BroadcasterEvent):
    chatter_user_id: str
    chatter_user_login: str
    chatter_user_name: str
    message_id: str
    message: ChatMessage
    message_type: str = "text"
    color: str = ""
    badges: list = []


class ChannelAdBreakBeginEvent(BroadcasterEvent):
    duration_seconds: int
    started_at: Timestamp
    is_automatic: bool
    requester_user_id: Optional[str] = None
    requester_user_login: Optional[str] = None
    requester_user_name: Optional[str] = None


class ChannelFollowEvent(BroadcasterEvent):
    user_id: str
    user_login: str
    user_name: str
    followed_at: Timestamp


class StreamOnlineEvent(BroadcasterEvent):
    id: str
    type: str
    started_at: Timestamp


class StreamOfflineEvent(BroadcasterEvent):
    pass


class ChannelUpdateEvent(BroadcasterEvent):
    title: str
    language: str
    category_id: str
    category_name: str


class ChannelRaidEvent(EventSubModel):
    from_broadcaster_user_id: str
    from_broadcaster_user_login: str
    from_broadcaster_user_name: str
    to_broadcaster_user_id: str
    to_broadcaster_user_login: str
    to_broadcaster_user_name: str
    viewers: int


# ============================================================================
# Catalog
# ============================================================================

@dataclass(frozen=True)
class SubscriptionType:
    """Schema descriptor for one EventSub subscription type."""
    name: str
    version: str
    condition: Type[BaseModel]
    event: Type[BaseModel]
    scopes: Tuple[str, ...] = ()

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.version)

    def build_condition(self, **fields: Any) -> Dict[str, Any]:
        """Validate condition fields and return the wire payload."""
        condition = decode_value(fields, self.condition)
        return condition.model_dump(exclude_none=True)

    def decode_event(self, payload: Dict[str, Any]) -> BaseModel:
        """Decode a notification event payload.

        Raises:
            DecodeError: Payload does not match the event schema
        """
        return decode_value(payload, self.event)


class SubscriptionCatalog:
    """Registry of known subscription types."""

    def __init__(self) -> None:
        self._types: Dict[Tuple[str, str], SubscriptionType] = {}

    def register(self, subscription_type: SubscriptionType) -> SubscriptionType:
        self._types[subscription_type.key] = subscription_type
        return subscription_type

    def get(self, name: str, version: str) -> Optional[SubscriptionType]:
        return self._types.get((name, version))

    def __contains__(self, key: object) -> bool:
        return key in self._types

    def __iter__(self) -> Iterator[SubscriptionType]:
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)

    def decode_event(self, name: str, version: str, payload: Dict[str, Any]) -> Any:
        """Decode an event payload, passing unknown types through unchanged.

        Raises:
            DecodeError: Known type whose payload does not match its schema
        """
        subscription_type = self.get(name, version)
        if subscription_type is None:
            return payload
        return subscription_type.decode_event(payload)


CHANNEL_CHAT_MESSAGE = SubscriptionType(
    "channel.chat.message", "1", ChannelChatCondition, ChannelChatMessageEvent,
    scopes=("user:read:chat",),
)
BETA_CHANNEL_AD_BREAK_BEGIN = SubscriptionType(
    "channel.ad_break.begin", "beta", BroadcasterCondition, ChannelAdBreakBeginEvent,
    scopes=("channel:read:ads",),
)
CHANNEL_AD_BREAK_BEGIN = SubscriptionType(
    "channel.ad_break.begin", "1", BroadcasterCondition, ChannelAdBreakBeginEvent,
    scopes=("channel:read:ads",),
)
CHANNEL_FOLLOW = SubscriptionType(
    "channel.follow", "2", ChannelFollowCondition, ChannelFollowEvent,
    scopes=("moderator:read:followers",),
)
CHANNEL_UPDATE = SubscriptionType("channel.update", "2", BroadcasterCondition, ChannelUpdateEvent)
CHANNEL_RAID = SubscriptionType("channel.raid", "1", ChannelRaidCondition, ChannelRaidEvent)
STREAM_ONLINE = SubscriptionType("stream.online", "1", BroadcasterCondition, StreamOnlineEvent)
STREAM_OFFLINE = SubscriptionType("stream.offline", "1", BroadcasterCondition, StreamOfflineEvent)


def default_catalog() -> SubscriptionCatalog:
    """Catalog pre-populated with the built-in subscription types."""
    catalog = SubscriptionCatalog()
    for subscription_type in (
        CHANNEL_CHAT_MESSAGE,
        BETA_CHANNEL_AD_BREAK_BEGIN,
        CHANNEL_AD_BREAK_BEGIN,
        CHANNEL_FOLLOW,
        CHANNEL_UPDATE,
        CHANNEL_RAID,
        STREAM_ONLINE,
        STREAM_OFFLINE,
    ):
        catalog.register(subscription_type)
    return catalog
