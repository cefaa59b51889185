"""Pydantic models for Helix and EventSub entities."""

from __future__ import annotations

import re
from datetime import datetime
from datetime import timedelta
from enum import Enum
from typing import Annotated
from typing import Any
from typing import Dict
from typing import Generic
from typing import List
from typing import Optional
from typing import Tuple
from typing import TypeVar

from pydantic import BaseModel
from pydantic import BeforeValidator
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator
from pydantic import model_validator

from twitchhelix.utils import utc_now

T = TypeVar("T")

_EXTRA_FRACTION = re.compile(r"(\.\d{6})\d+")


def _trim_fraction(value: Any) -> Any:
    if isinstance(value, str):
        return _EXTRA_FRACTION.sub(r"\1", value, count=1)
    return value


# Server timestamps carry nanoseconds; datetime holds microseconds
Timestamp = Annotated[datetime, BeforeValidator(_trim_fraction)]


class HelixBaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        # Validate field assignment
        validate_assignment=True,
        # Allow population by field name and alias
        populate_by_name=True,
        # The platform adds fields without notice
        extra="ignore",
    )


# ============================================================================
# Enums
# ============================================================================

class ShardStatus(str, Enum):
    """Health of one unit of event delivery (a WebSocket session or webhook)."""
    ENABLED = "enabled"
    WEBHOOK_CALLBACK_VERIFICATION_PENDING = "webhook_callback_verification_pending"
    WEBHOOK_CALLBACK_VERIFICATION_FAILED = "webhook_callback_verification_failed"
    NOTIFICATION_FAILURES_EXCEEDED = "notification_failures_exceeded"
    WEBSOCKET_DISCONNECTED = "websocket_disconnected"
    WEBSOCKET_FAILED_PING_PONG = "websocket_failed_ping_pong"
    WEBSOCKET_FAILED_TO_RECONNECT = "websocket_failed_to_reconnect"
    WEBSOCKET_RECEIVED_INBOUND_TRAFFIC = "websocket_received_inbound_traffic"
    WEBSOCKET_INTERNAL_ERROR = "websocket_internal_error"
    WEBSOCKET_NETWORK_TIMEOUT = "websocket_network_timeout"
    WEBSOCKET_NETWORK_ERROR = "websocket_network_error"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> ShardStatus:
        if isinstance(value, str):
            normalized = value.lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return cls.UNKNOWN

    @classmethod
    def decode(cls, value: Any) -> ShardStatus:
        """Decode a server-sent status, mapping anything undocumented to UNKNOWN."""
        if isinstance(value, cls):
            return value
        return cls(value)


class SubscriptionStatus(str, Enum):
    """Status of a single EventSub subscription."""
    ENABLED = "enabled"
    WEBHOOK_CALLBACK_VERIFICATION_PENDING = "webhook_callback_verification_pending"
    WEBHOOK_CALLBACK_VERIFICATION_FAILED = "webhook_callback_verification_failed"
    NOTIFICATION_FAILURES_EXCEEDED = "notification_failures_exceeded"
    AUTHORIZATION_REVOKED = "authorization_revoked"
    MODERATOR_REMOVED = "moderator_removed"
    USER_REMOVED = "user_removed"
    VERSION_REMOVED = "version_removed"
    BETA_MAINTENANCE = "beta_maintenance"
    WEBSOCKET_DISCONNECTED = "websocket_disconnected"
    WEBSOCKET_FAILED_PING_PONG = "websocket_failed_ping_pong"
    WEBSOCKET_FAILED_TO_RECONNECT = "websocket_failed_to_reconnect"
    WEBSOCKET_RECEIVED_INBOUND_TRAFFIC = "websocket_received_inbound_traffic"
    WEBSOCKET_CONNECTION_UNUSED = "websocket_connection_unused"
    WEBSOCKET_INTERNAL_ERROR = "websocket_internal_error"
    WEBSOCKET_NETWORK_TIMEOUT = "websocket_network_timeout"
    WEBSOCKET_NETWORK_ERROR = "websocket_network_error"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> SubscriptionStatus:
        return cls.UNKNOWN

    @classmethod
    def from_shard_status(cls, status: ShardStatus) -> SubscriptionStatus:
        """Map a shard status onto the subscription status it leaves behind.

        Shard statuses without a subscription counterpart map to UNKNOWN.
        """
        return SHARD_TO_SUBSCRIPTION_STATUS.get(status, cls.UNKNOWN)


SHARD_TO_SUBSCRIPTION_STATUS: Dict[ShardStatus, SubscriptionStatus] = {
    ShardStatus.ENABLED: SubscriptionStatus.ENABLED,
    ShardStatus.WEBHOOK_CALLBACK_VERIFICATION_PENDING: SubscriptionStatus.WEBHOOK_CALLBACK_VERIFICATION_PENDING,
    ShardStatus.WEBHOOK_CALLBACK_VERIFICATION_FAILED: SubscriptionStatus.WEBHOOK_CALLBACK_VERIFICATION_FAILED,
    ShardStatus.NOTIFICATION_FAILURES_EXCEEDED: SubscriptionStatus.NOTIFICATION_FAILURES_EXCEEDED,
    ShardStatus.WEBSOCKET_DISCONNECTED: SubscriptionStatus.WEBSOCKET_DISCONNECTED,
    ShardStatus.WEBSOCKET_FAILED_PING_PONG: SubscriptionStatus.WEBSOCKET_FAILED_PING_PONG,
    ShardStatus.WEBSOCKET_FAILED_TO_RECONNECT: SubscriptionStatus.WEBSOCKET_FAILED_TO_RECONNECT,
    ShardStatus.WEBSOCKET_RECEIVED_INBOUND_TRAFFIC: SubscriptionStatus.WEBSOCKET_RECEIVED_INBOUND_TRAFFIC,
    ShardStatus.WEBSOCKET_INTERNAL_ERROR: SubscriptionStatus.WEBSOCKET_INTERNAL_ERROR,
    ShardStatus.WEBSOCKET_NETWORK_TIMEOUT: SubscriptionStatus.WEBSOCKET_NETWORK_TIMEOUT,
    ShardStatus.WEBSOCKET_NETWORK_ERROR: SubscriptionStatus.WEBSOCKET_NETWORK_ERROR,
    ShardStatus.UNKNOWN: SubscriptionStatus.UNKNOWN,
}


class CredentialKind(str, Enum):
    """Kind of bearer token an endpoint requires."""
    APP = "app"
    USER = "user"
    ANY = "any"


class TransportMethod(str, Enum):
    """EventSub delivery transport."""
    WEBHOOK = "webhook"
    WEBSOCKET = "websocket"
    CONDUIT = "conduit"


# ============================================================================
# Authentication Models
# ============================================================================

class Credential(HelixBaseModel):
    """OAuth2 bearer credential for one (client id, user) identity."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    client_id: str = Field(..., description="Client id the token was issued to")
    user_id: Optional[str] = Field(None, description="User id for user tokens, None for app tokens")
    login: Optional[str] = Field(None, description="User login name")
    scopes: Tuple[str, ...] = Field(default_factory=tuple, description="Granted scopes")
    access_token: str = Field(..., description="Bearer token", repr=False)
    refresh_token: Optional[str] = Field(None, description="Refresh token", repr=False)
    expires_at: Optional[datetime] = Field(None, description="Expiry instant, None if unknown")

    @property
    def kind(self) -> CredentialKind:
        """App or user credential."""
        return CredentialKind.USER if self.user_id else CredentialKind.APP

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        """Identity key; exactly one credential is stored per key."""
        return (self.client_id, self.user_id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether the expiry instant has passed; unknown expiry never expires."""
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """Whether the credential expires within the given lead window."""
        if self.expires_at is None:
            return False
        return (now or utc_now()) + timedelta(seconds=seconds) >= self.expires_at


class TokenResponse(HelixBaseModel):
    """OAuth2 token endpoint response."""
    access_token: str = Field(..., repr=False)
    refresh_token: Optional[str] = Field(None, repr=False)
    expires_in: Optional[int] = Field(None, description="Lifetime in seconds")
    scope: List[str] = Field(default_factory=list)
    token_type: str = "bearer"


# ============================================================================
# Rate Limit Models
# ============================================================================

class RateBudget(HelixBaseModel):
    """Remaining allowance in the current rate-limit window."""

    model_config = ConfigDict(frozen=True)

    capacity: int = Field(..., gt=0, description="Bucket size")
    remaining: int = Field(..., ge=0, description="Points left in this window")
    reset_at: float = Field(..., description="Epoch seconds at which the bucket refills")

    @model_validator(mode="after")
    def _check_remaining(self) -> RateBudget:
        if self.remaining > self.capacity:
            raise ValueError("remaining cannot exceed capacity")
        return self


# ============================================================================
# Session Models
# ============================================================================

class Session(HelixBaseModel):
    """One EventSub WebSocket session."""
    session_id: Optional[str] = Field(None, description="Set once the welcome message arrives")
    status: ShardStatus = Field(ShardStatus.WEBSOCKET_DISCONNECTED, description="Shard health")
    keepalive_timeout_seconds: Optional[int] = Field(None, description="Keepalive timeout")
    reconnect_url: Optional[str] = Field(None, description="Reconnect URL sent by the server")
    url: Optional[str] = Field(None, description="URL the transport connected to")
    created_at: datetime = Field(default_factory=utc_now, description="Transport connect time")
    connected_at: Optional[Timestamp] = Field(None, description="Server-side connect time")

    @field_validator("status", mode="before")
    @classmethod
    def _decode_status(cls, value: Any) -> ShardStatus:
        return ShardStatus.decode(value)


# ============================================================================
# Subscription Models
# ============================================================================

class TransportBinding(HelixBaseModel):
    """Where notifications for a subscription are delivered."""
    method: TransportMethod = Field(..., description="Transport method")
    callback: Optional[str] = Field(None, description="Webhook callback URL")
    secret: Optional[str] = Field(None, description="Webhook secret", repr=False, exclude=True)
    session_id: Optional[str] = Field(None, description="WebSocket session id")
    conduit_id: Optional[str] = Field(None, description="Conduit id")
    connected_at: Optional[Timestamp] = None
    disconnected_at: Optional[Timestamp] = None

    @property
    def ref(self) -> Optional[str]:
        """Opaque transport reference used by the subscription registry."""
        if self.method == TransportMethod.WEBSOCKET:
            return self.session_id
        if self.method == TransportMethod.CONDUIT:
            return self.conduit_id
        return self.callback

    @classmethod
    def websocket(cls, session_id: str) -> TransportBinding:
        return cls(method=TransportMethod.WEBSOCKET, session_id=session_id)

    @classmethod
    def webhook(cls, callback: str, secret: str) -> TransportBinding:
        return cls(method=TransportMethod.WEBHOOK, callback=callback, secret=secret)


class Subscription(HelixBaseModel):
    """EventSub subscription."""
    id: str = Field(..., description="Subscription id")
    type: str = Field(..., description="Subscription type name")
    version: str = Field(..., description="Subscription type version")
    status: SubscriptionStatus = Field(SubscriptionStatus.ENABLED, description="Subscription status")
    condition: Dict[str, Any] = Field(default_factory=dict, description="Condition payload")
    transport: TransportBinding = Field(..., description="Transport binding")
    created_at: Optional[Timestamp] = Field(None, description="Creation timestamp")
    cost: int = Field(0, description="Cost against the subscription budget")
    revoked_at: Optional[datetime] = Field(None, description="When a revocation was received")

    @field_validator("status", mode="before")
    @classmethod
    def _decode_status(cls, value: Any) -> SubscriptionStatus:
        if isinstance(value, SubscriptionStatus):
            return value
        return SubscriptionStatus(value)

    @property
    def revoked(self) -> bool:
        """Whether the platform revoked this subscription."""
        return self.revoked_at is not None


class CreateSubscriptionRequest(HelixBaseModel):
    """Body of a create-subscription call."""
    type: str
    version: str
    condition: Dict[str, Any]
    transport: TransportBinding

    def to_body(self) -> Dict[str, Any]:
        """Serialize, keeping the webhook secret the model excludes by default."""
        body = self.model_dump(mode="json", exclude_none=True)
        if self.transport.secret is not None:
            body["transport"]["secret"] = self.transport.secret
        return body


# ============================================================================
# API Response Models
# ============================================================================

class HelixErrorBody(HelixBaseModel):
    """Platform error envelope returned with non-2xx responses."""
    error: str = Field("", description="HTTP reason phrase")
    status: int = Field(0, description="HTTP status code")
    message: str = Field("", description="Human readable description")


class Pagination(HelixBaseModel):
    """Cursor pagination block."""
    cursor: Optional[str] = None


class HelixResponse(HelixBaseModel, Generic[T]):
    """Standard Helix data envelope."""
    data: List[T] = Field(default_factory=list)
    pagination: Optional[Pagination] = None


class SubscriptionList(HelixResponse[Subscription]):
    """Response of the list/create subscription endpoints."""
    total: int = 0
    total_cost: int = 0
    max_total_cost: int = 0


class User(HelixBaseModel):
    """Helix user."""
    id: str
    login: str
    display_name: str = ""
    type: str = ""
    broadcaster_type: str = ""
    description: str = ""
    profile_image_url: Optional[str] = None
    offline_image_url: Optional[str] = None
    created_at: Optional[Timestamp] = None
