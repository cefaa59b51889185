"""
Environment variable configuration loader for the Twitch Helix SDK.

This module builds the immutable configuration objects from environment
variables (optionally read from a ``.env`` file), so deployments can switch
between the production API and the Twitch CLI mock server without code changes.
"""

import os
import logging
from datetime import timedelta
from typing import Optional, Dict, Any, List

from dotenv import load_dotenv

from .config import (
    HelixConfig,
    EventSocketConfig,
    RateLimitConfig,
    RetryConfig,
)
from .models import Credential
from .utils import utc_now

logger = logging.getLogger(__name__)


def load_config_from_env(dotenv: bool = True) -> HelixConfig:
    """
    Load Helix client configuration from environment variables.

    Environment variables:
        Core Configuration:
            TWITCH_CLIENT_ID: Application client id
            TWITCH_CLIENT_SECRET: Application client secret
            TWITCH_HELIX_BASE_URL: Base API URL
            TWITCH_TOKEN_URL: OAuth2 token endpoint
            TWITCH_TIMEOUT: Per-call timeout in seconds
            TWITCH_USER_AGENT: User agent string
            TWITCH_PROXY: Proxy URL
            TWITCH_REQUEST_QUEUE_SIZE: Max concurrent calls (-1 = unbounded)
            TWITCH_REFRESH_LEAD_TIME: Seconds before expiry to refresh tokens

        Rate Limiting:
            TWITCH_RATE_LIMIT_CAPACITY: Initial bucket size
            TWITCH_RATE_LIMIT_WINDOW: Initial window in seconds

        Retry:
            TWITCH_RETRY_MAX_ATTEMPTS: Max attempts for network/5xx failures
            TWITCH_RETRY_BASE_DELAY: Base delay in seconds
            TWITCH_RETRY_MAX_DELAY: Max delay in seconds
            TWITCH_RETRY_JITTER: Apply full jitter (true/false)
            TWITCH_RETRY_RATE_LIMIT: Max replays after 429 responses

    Args:
        dotenv: Read a ``.env`` file into the environment first

    Returns:
        HelixConfig: Configuration object loaded from environment
    """
    if dotenv:
        load_dotenv()

    values: Dict[str, Any] = {}

    if client_id := os.getenv('TWITCH_CLIENT_ID'):
        values['client_id'] = client_id

    if client_secret := os.getenv('TWITCH_CLIENT_SECRET'):
        values['client_secret'] = client_secret

    if base_url := os.getenv('TWITCH_HELIX_BASE_URL'):
        values['base_url'] = base_url.rstrip('/')  # Remove trailing slash

    if token_url := os.getenv('TWITCH_TOKEN_URL'):
        values['token_url'] = token_url

    if user_agent := os.getenv('TWITCH_USER_AGENT'):
        values['user_agent'] = user_agent

    if proxy := os.getenv('TWITCH_PROXY'):
        values['proxy'] = proxy

    _set_number(values, 'timeout', 'TWITCH_TIMEOUT', float)
    _set_number(values, 'request_queue_size', 'TWITCH_REQUEST_QUEUE_SIZE', int)
    _set_number(values, 'refresh_lead_time', 'TWITCH_REFRESH_LEAD_TIME', float)

    values['rate_limit'] = _load_rate_limit_from_env()
    values['retry'] = _load_retry_from_env()

    return HelixConfig(**values)


def load_socket_config_from_env(dotenv: bool = True) -> EventSocketConfig:
    """
    Load EventSub WebSocket configuration from environment variables.

    Environment variables:
        TWITCH_EVENTSUB_URL: WebSocket URL
        TWITCH_EVENTSUB_AUTO_RECONNECT: Reconnect after failures (true/false)
        TWITCH_EVENTSUB_RECONNECT_ATTEMPTS: Max reconnect-from-scratch attempts
        TWITCH_EVENTSUB_RECONNECT_DELAY: Base reconnect delay in seconds
        TWITCH_EVENTSUB_KEEPALIVE: Requested keepalive timeout in seconds
        TWITCH_EVENTSUB_KEEPALIVE_GRACE: Extra seconds tolerated past the keepalive timeout
        TWITCH_EVENTSUB_QUEUE_SIZE: Inbound message queue size

    Returns:
        EventSocketConfig: Configuration object loaded from environment
    """
    if dotenv:
        load_dotenv()

    values: Dict[str, Any] = {}

    if url := os.getenv('TWITCH_EVENTSUB_URL'):
        values['url'] = url

    if auto_reconnect := os.getenv('TWITCH_EVENTSUB_AUTO_RECONNECT'):
        values['auto_reconnect'] = _parse_bool(auto_reconnect)

    _set_number(values, 'max_reconnect_attempts', 'TWITCH_EVENTSUB_RECONNECT_ATTEMPTS', int)
    _set_number(values, 'reconnect_base_delay', 'TWITCH_EVENTSUB_RECONNECT_DELAY', float)
    _set_number(values, 'keepalive_timeout_seconds', 'TWITCH_EVENTSUB_KEEPALIVE', int)
    _set_number(values, 'keepalive_grace', 'TWITCH_EVENTSUB_KEEPALIVE_GRACE', float)
    _set_number(values, 'message_queue_size', 'TWITCH_EVENTSUB_QUEUE_SIZE', int)

    return EventSocketConfig(**values)


def load_credentials_from_env(config: HelixConfig) -> List[Credential]:
    """
    Load the initial user credential from environment variables.

    Environment variables:
        TWITCH_ACCESS_TOKEN: User access token
        TWITCH_REFRESH_TOKEN: Refresh token for the access token
        TWITCH_USER_ID: User id the token belongs to
        TWITCH_TOKEN_EXPIRES_IN: Seconds until the access token expires

    Args:
        config: Client configuration providing the client id

    Returns:
        Zero or one credentials
    """
    access_token = os.getenv('TWITCH_ACCESS_TOKEN')
    if not access_token:
        return []

    if not config.client_id:
        logger.warning("TWITCH_ACCESS_TOKEN is set but TWITCH_CLIENT_ID is not, ignoring token")
        return []

    expires_at = None
    if expires_in := os.getenv('TWITCH_TOKEN_EXPIRES_IN'):
        try:
            expires_at = utc_now() + timedelta(seconds=int(expires_in))
        except ValueError:
            logger.warning(f"Invalid token lifetime: {expires_in}")

    return [
        Credential(
            client_id=config.client_id,
            user_id=os.getenv('TWITCH_USER_ID') or None,
            access_token=access_token,
            refresh_token=os.getenv('TWITCH_REFRESH_TOKEN') or None,
            expires_at=expires_at,
        )
    ]


def _load_rate_limit_from_env() -> RateLimitConfig:
    """Load rate limiting configuration from environment."""
    values: Dict[str, Any] = {}
    _set_number(values, 'capacity', 'TWITCH_RATE_LIMIT_CAPACITY', int)
    _set_number(values, 'window', 'TWITCH_RATE_LIMIT_WINDOW', float)
    return RateLimitConfig(**values)


def _load_retry_from_env() -> RetryConfig:
    """Load retry configuration from environment."""
    values: Dict[str, Any] = {}
    _set_number(values, 'max_attempts', 'TWITCH_RETRY_MAX_ATTEMPTS', int)
    _set_number(values, 'base_delay', 'TWITCH_RETRY_BASE_DELAY', float)
    _set_number(values, 'max_delay', 'TWITCH_RETRY_MAX_DELAY', float)
    _set_number(values, 'rate_limit_retries', 'TWITCH_RETRY_RATE_LIMIT', int)

    if jitter := os.getenv('TWITCH_RETRY_JITTER'):
        values['jitter'] = _parse_bool(jitter)

    return RetryConfig(**values)


def _set_number(values: Dict[str, Any], name: str, env_var: str, convert: type) -> None:
    """Copy a numeric environment variable into ``values`` if it parses."""
    raw = os.getenv(env_var)
    if not raw:
        return
    try:
        values[name] = convert(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value: {raw}, using default")


def _parse_bool(value: Optional[str]) -> bool:
    """Parse boolean from string."""
    if not value:
        return False
    return value.lower() in ('true', '1', 'yes', 'on')
