"""Adaptive token bucket recalibrated from Helix rate limit headers."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from typing import Callable
from typing import Mapping
from typing import Optional

from twitchhelix.errors import HelixTimeoutError
from twitchhelix.models import RateBudget
from twitchhelix.utils import parse_rate_limit_headers

logger = logging.getLogger(__name__)

# Lower bound on a single wait so a reset instant in the past cannot spin
MIN_WAIT = 0.01


class Permit:
    """Right to send one request, granted by :class:`RateLimiter`.

    A permit that is released without being consumed gives its points back
    to the window it was drawn from.
    """

    def __init__(self, limiter: RateLimiter, cost: int, reset_at: float) -> None:
        self.cost = cost
        self.reset_at = reset_at
        self.consumed = False
        self.released = False
        self._limiter = limiter

    def consume(self) -> None:
        """Mark the permit as spent on a dispatched request."""
        self.consumed = True

    def release(self) -> None:
        """Return the points unless the permit was consumed."""
        if self.released:
            return
        self.released = True
        if not self.consumed:
            self._limiter._refund(self)

    def __repr__(self) -> str:
        return f"Permit(cost={self.cost}, consumed={self.consumed}, released={self.released})"


class RateLimiter:
    """Token bucket whose capacity, remaining points and reset instant track
    the ``Ratelimit-*`` headers of every response.

    Waiters are served strictly in arrival order: only the waiter at the head
    of the queue watches the budget, everyone behind it waits on the gate.
    All budget mutations are synchronous, so they are atomic with respect to
    the event loop.
    """

    def __init__(
        self,
        capacity: int = 800,
        window: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize rate limiter.

        Args:
            capacity: Points per window before any server feedback
            window: Window length in seconds before any server feedback
            clock: Wall clock in epoch seconds (reset headers are epoch seconds)
        """
        self._window = window
        self._clock = clock
        self._budget = RateBudget(capacity=capacity, remaining=capacity, reset_at=clock() + window)
        # Locally guessed windows give way to the first server-reported reset
        self._provisional = True
        self._gate = asyncio.Lock()
        self._changed = asyncio.Event()

    @property
    def budget(self) -> RateBudget:
        """Snapshot of the current budget."""
        self._roll(self._clock())
        return self._budget

    async def acquire(self, cost: int = 1, timeout: Optional[float] = None) -> Permit:
        """Wait until ``cost`` points are available and take them.

        Args:
            cost: Points the request costs
            timeout: Seconds to wait before giving up, None waits indefinitely

        Returns:
            Permit for the request

        Raises:
            HelixTimeoutError: No permit within the timeout
            ValueError: Cost is not positive or exceeds the bucket capacity
        """
        if cost < 1:
            raise ValueError("cost must be at least 1")
        if cost > self._budget.capacity:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self._budget.capacity}")

        try:
            return await asyncio.wait_for(self._acquire(cost), timeout)
        except asyncio.TimeoutError:
            raise HelixTimeoutError("Timed out waiting for a rate limit permit", timeout=timeout) from None

    @asynccontextmanager
    async def permit(self, cost: int = 1, timeout: Optional[float] = None) -> AsyncIterator[Permit]:
        """Acquire a permit and release it on exit.

        Points are refunded if the body never called :meth:`Permit.consume`.
        """
        permit = await self.acquire(cost, timeout)
        try:
            yield permit
        finally:
            permit.release()

    async def _acquire(self, cost: int) -> Permit:
        async with self._gate:
            while True:
                now = self._clock()
                self._roll(now)
                budget = self._budget
                if budget.remaining >= cost:
                    self._budget = RateBudget(
                        capacity=budget.capacity,
                        remaining=budget.remaining - cost,
                        reset_at=budget.reset_at,
                    )
                    return Permit(self, cost, budget.reset_at)

                delay = max(budget.reset_at - now, MIN_WAIT)
                logger.debug(f"Rate budget exhausted, waiting up to {delay:.2f}s for reset")
                self._changed.clear()
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass

    def _roll(self, now: float) -> None:
        """Start a new window once the reset instant has passed."""
        budget = self._budget
        if now >= budget.reset_at:
            self._budget = RateBudget(
                capacity=budget.capacity,
                remaining=budget.capacity,
                reset_at=now + self._window,
            )
            self._provisional = True

    def _refund(self, permit: Permit) -> None:
        budget = self._budget
        if permit.reset_at != budget.reset_at:
            # The window the points came from is gone
            return
        self._budget = RateBudget(
            capacity=budget.capacity,
            remaining=min(budget.capacity, budget.remaining + permit.cost),
            reset_at=budget.reset_at,
        )
        self._changed.set()

    def observe(
        self,
        limit: Optional[int],
        remaining: Optional[int],
        reset: Optional[float],
    ) -> RateBudget:
        """Fold server-reported limits into the budget.

        A later reset instant means the server started a new window, so its
        numbers replace ours wholesale; so does any reset while our window is
        still the local guess. Otherwise the lower of the stored and observed
        remaining points wins, since responses may arrive out of order. An
        exhausted budget takes the server's reset even when it is earlier.

        Args:
            limit: Bucket capacity from ``Ratelimit-Limit``
            remaining: Points left from ``Ratelimit-Remaining``
            reset: Epoch seconds from ``Ratelimit-Reset``

        Returns:
            The updated budget
        """
        current = self._budget
        capacity = limit if limit is not None and limit > 0 else current.capacity

        if reset is not None and (self._provisional or reset > current.reset_at):
            observed = capacity if remaining is None else remaining
            updated = RateBudget(
                capacity=capacity,
                remaining=max(0, min(observed, capacity)),
                reset_at=float(reset),
            )
            self._provisional = False
        else:
            observed = current.remaining if remaining is None else remaining
            left = max(0, min(current.remaining, observed, capacity))
            reset_at = current.reset_at
            if left == 0 and reset is not None:
                reset_at = min(reset_at, float(reset))
            updated = RateBudget(capacity=capacity, remaining=left, reset_at=reset_at)

        self._budget = updated
        if updated.remaining > 0 or updated.reset_at != current.reset_at:
            # Waiters recompute their delay against the new reset instant
            self._changed.set()
        return updated

    def observe_headers(self, headers: Mapping[str, str]) -> Optional[RateBudget]:
        """Fold the ``Ratelimit-*`` headers of a response into the budget.

        Returns:
            The updated budget, or None if the response carried no rate headers
        """
        info = parse_rate_limit_headers(headers)
        if not info:
            return None
        return self.observe(info.get("limit"), info.get("remaining"), info.get("reset"))

    def drain(self, reset: Optional[float] = None) -> None:
        """Zero the remaining points, e.g. after a 429 without rate headers.

        A server-reported reset ends the drained window, earlier or not.
        """
        current = self._budget
        reset_at = current.reset_at
        if reset is not None:
            reset_at = float(reset)
            self._provisional = False
        self._budget = RateBudget(capacity=current.capacity, remaining=0, reset_at=reset_at)
        if reset_at != current.reset_at:
            self._changed.set()
        logger.warning(f"Rate budget drained until {reset_at:.0f}")
