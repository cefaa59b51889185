"""
Immutable configuration for the Twitch Helix SDK.

Every option is a named field on a frozen dataclass passed to the component
that uses it at construction time. There is no global configuration.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from .errors import ConfigurationError

__version__ = "1.0.0"

OFFICIAL_BASE_URL = "https://api.twitch.tv/helix"
MOCK_BASE_URL = "http://localhost:8080/mock"
TOKEN_URL = "https://id.twitch.tv/oauth2/token"

EVENTSUB_WEBSOCKET_URL = "wss://eventsub.wss.twitch.tv/ws"
MOCK_EVENTSUB_WEBSOCKET_URL = "ws://127.0.0.1:8080/ws"

DEFAULT_USER_AGENT = f"twitchhelix-sdk/{__version__}"


@dataclass(frozen=True)
class RateLimitConfig:
    """Initial token bucket, used until the server reports its own."""
    capacity: int = 800
    window: float = 60.0  # seconds

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ConfigurationError("rate limit capacity must be positive")
        if self.window <= 0:
            raise ConfigurationError("rate limit window must be positive")


@dataclass(frozen=True)
class RetryConfig:
    """Retry behavior configuration."""
    max_attempts: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True
    # 429 replays are budgeted separately from general retries
    rate_limit_retries: int = 3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.rate_limit_retries < 0:
            raise ConfigurationError("rate_limit_retries cannot be negative")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays cannot be negative")


@dataclass(frozen=True)
class HelixConfig:
    """Helix REST client configuration."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    user_agent: str = DEFAULT_USER_AGENT
    base_url: str = OFFICIAL_BASE_URL
    token_url: str = TOKEN_URL
    timeout: float = 5.0  # seconds, per call including retries
    proxy: Optional[str] = None
    max_connections: int = 100
    request_queue_size: int = -1  # -1 = unbounded
    refresh_lead_time: float = 60.0  # seconds
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        if not self.base_url.startswith(('http://', 'https://')):
            raise ConfigurationError("base_url must start with http:// or https://")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if self.max_connections <= 0:
            raise ConfigurationError("max_connections must be positive")
        if self.request_queue_size == 0 or self.request_queue_size < -1:
            raise ConfigurationError("request_queue_size must be positive or -1")
        if self.refresh_lead_time < 0:
            raise ConfigurationError("refresh_lead_time cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary, without secrets."""
        return {
            'client_id': self.client_id,
            'user_agent': self.user_agent,
            'base_url': self.base_url,
            'timeout': self.timeout,
            'proxy': self.proxy,
            'request_queue_size': self.request_queue_size,
            'rate_limit': {
                'capacity': self.rate_limit.capacity,
                'window': self.rate_limit.window,
            },
            'retry': {
                'max_attempts': self.retry.max_attempts,
                'rate_limit_retries': self.retry.rate_limit_retries,
            },
        }


@dataclass(frozen=True)
class EventSocketConfig:
    """EventSub WebSocket session configuration."""
    url: str = EVENTSUB_WEBSOCKET_URL
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 1.0  # seconds
    reconnect_max_delay: float = 60.0  # seconds
    handshake_timeout: float = 10.0  # seconds to receive session_welcome
    reconnect_timeout: float = 30.0  # seconds for the handoff connection to welcome
    open_timeout: float = 10.0  # seconds for the TCP/TLS/WebSocket handshake
    keepalive_grace: float = 2.0  # seconds on top of keepalive_timeout_seconds
    keepalive_timeout_seconds: Optional[int] = None  # requested from the server
    message_queue_size: int = 1000
    max_message_size: int = 1024 * 1024  # 1MB
    duplicate_window: int = 512  # message ids remembered for redelivery checks

    def __post_init__(self) -> None:
        if not self.url.startswith(('ws://', 'wss://')):
            raise ConfigurationError("url must start with ws:// or wss://")
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError("max_reconnect_attempts cannot be negative")
        if self.handshake_timeout <= 0 or self.reconnect_timeout <= 0:
            raise ConfigurationError("handshake and reconnect timeouts must be positive")
        if self.keepalive_timeout_seconds is not None and not 10 <= self.keepalive_timeout_seconds <= 600:
            raise ConfigurationError("keepalive_timeout_seconds must be between 10 and 600")
        if self.keepalive_grace < 0:
            raise ConfigurationError("keepalive_grace cannot be negative")
        if self.message_queue_size <= 0:
            raise ConfigurationError("message_queue_size must be positive")

    def connect_url(self) -> str:
        """URL for a fresh connection, including the keepalive request."""
        if self.keepalive_timeout_seconds is None:
            return self.url
        separator = '&' if '?' in self.url else '?'
        return f"{self.url}{separator}keepalive_timeout_seconds={self.keepalive_timeout_seconds}"
