"""Twitch Helix SDK - Async Helix REST client and EventSub WebSocket session."""

__version__ = "1.0.0"

from .client import HelixClient
from .config import (
    EVENTSUB_WEBSOCKET_URL,
    MOCK_BASE_URL,
    MOCK_EVENTSUB_WEBSOCKET_URL,
    OFFICIAL_BASE_URL,
    EventSocketConfig,
    HelixConfig,
    RateLimitConfig,
    RetryConfig,
)
from .credentials import CredentialStore, OAuth2TokenRefresher, TokenRefresher
from .env_config import load_config_from_env, load_credentials_from_env, load_socket_config_from_env
from .errors import (
    AuthError,
    ConfigurationError,
    DecodeError,
    HelixHTTPError,
    HelixTimeoutError,
    NoCredentialError,
    RateLimitExceededError,
    RefreshError,
    RequestError,
    SessionFailure,
    TransportError,
    TwitchHelixError,
)
from .logging_config import configure_logging
from .models import (
    Credential,
    CredentialKind,
    RateBudget,
    Session,
    ShardStatus,
    Subscription,
    SubscriptionStatus,
    TransportBinding,
    TransportMethod,
)
from .ratelimit import RateLimiter
from .registry import SubscriptionRegistry
from .subscriptions import SubscriptionCatalog, SubscriptionType, default_catalog
from .websocket import EventSocketSession, SessionCallbacks, SessionState

__all__ = [
    "HelixClient",
    "HelixConfig",
    "EventSocketConfig",
    "RateLimitConfig",
    "RetryConfig",
    "OFFICIAL_BASE_URL",
    "MOCK_BASE_URL",
    "EVENTSUB_WEBSOCKET_URL",
    "MOCK_EVENTSUB_WEBSOCKET_URL",
    "CredentialStore",
    "TokenRefresher",
    "OAuth2TokenRefresher",
    "RateLimiter",
    "SubscriptionRegistry",
    "SubscriptionCatalog",
    "SubscriptionType",
    "default_catalog",
    "EventSocketSession",
    "SessionCallbacks",
    "SessionState",
    "Credential",
    "CredentialKind",
    "RateBudget",
    "Session",
    "ShardStatus",
    "Subscription",
    "SubscriptionStatus",
    "TransportBinding",
    "TransportMethod",
    "TwitchHelixError",
    "ConfigurationError",
    "NoCredentialError",
    "RefreshError",
    "HelixHTTPError",
    "AuthError",
    "RateLimitExceededError",
    "RequestError",
    "TransportError",
    "HelixTimeoutError",
    "DecodeError",
    "SessionFailure",
    "load_config_from_env",
    "load_socket_config_from_env",
    "load_credentials_from_env",
    "configure_logging",
    "__version__",
]
