"""Utility functions for the Twitch Helix SDK."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterator
from typing import Mapping
from typing import Optional

import backoff

logger = logging.getLogger(__name__)

RATELIMIT_LIMIT_HEADER = "Ratelimit-Limit"
RATELIMIT_REMAINING_HEADER = "Ratelimit-Remaining"
RATELIMIT_RESET_HEADER = "Ratelimit-Reset"


def utc_now() -> datetime:
    """Get current UTC datetime.

    Returns:
        Current UTC datetime
    """
    return datetime.now(timezone.utc)


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_rate_limit_headers(headers: Mapping[str, str]) -> Dict[str, int]:
    """Parse Helix rate limit headers.

    Args:
        headers: HTTP response headers (case-insensitive mapping)

    Returns:
        Dict with any of ``limit``, ``remaining`` and ``reset`` (epoch seconds)
        that were present and well formed
    """
    rate_limit_info: Dict[str, int] = {}

    for key, header in (
        ("limit", RATELIMIT_LIMIT_HEADER),
        ("remaining", RATELIMIT_REMAINING_HEADER),
        ("reset", RATELIMIT_RESET_HEADER),
    ):
        value = _parse_int(headers.get(header))
        if value is not None:
            rate_limit_info[key] = value

    return rate_limit_info


def backoff_delays(
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    factor: float = 2.0,
    jitter: bool = True,
) -> Iterator[float]:
    """Yield exponential backoff delays, with full jitter when requested.

    Args:
        base_delay: First delay in seconds
        max_delay: Maximum delay in seconds
        factor: Backoff multiplier
        jitter: Whether to apply full jitter

    Yields:
        Delay in seconds for each successive retry
    """
    wait_gen = backoff.expo(base=factor, factor=base_delay, max_value=max_delay)
    # backoff.expo primes itself with a bare ``next``
    next(wait_gen)
    for value in wait_gen:
        yield backoff.full_jitter(value) if jitter else value


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke a sync or async application callback, logging instead of raising.

    Args:
        callback: Callback to invoke, ignored when None
        *args: Positional arguments for the callback
    """
    if callback is None:
        return

    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        name = getattr(callback, "__name__", repr(callback))
        logger.error(f"Callback {name} raised: {e}", exc_info=True)
