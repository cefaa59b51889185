"""Request execution: auth, rate limiting, dispatch, classification and retry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any
from typing import Dict
from typing import Optional

import httpx

from twitchhelix.codec import decode
from twitchhelix.config import RetryConfig
from twitchhelix.credentials import CredentialStore
from twitchhelix.errors import AuthError
from twitchhelix.errors import DecodeError
from twitchhelix.errors import HelixTimeoutError
from twitchhelix.errors import RateLimitExceededError
from twitchhelix.errors import RefreshError
from twitchhelix.errors import RequestError
from twitchhelix.errors import TransportError
from twitchhelix.models import Credential
from twitchhelix.models import CredentialKind
from twitchhelix.models import HelixErrorBody
from twitchhelix.ratelimit import RateLimiter
from twitchhelix.utils import backoff_delays
from twitchhelix.utils import parse_rate_limit_headers

logger = logging.getLogger(__name__)


class ResponseClass(str, Enum):
    """How a response is handled."""
    SUCCESS = "success"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"


def classify(response: httpx.Response) -> ResponseClass:
    """Classify a response by status code.

    Args:
        response: HTTP response

    Returns:
        Response class
    """
    status = response.status_code
    if status < 400:
        return ResponseClass.SUCCESS
    if status == 401:
        return ResponseClass.UNAUTHORIZED
    if status == 429:
        return ResponseClass.RATE_LIMITED
    if status >= 500:
        return ResponseClass.SERVER_ERROR
    return ResponseClass.CLIENT_ERROR


def decode_error_body(response: httpx.Response) -> HelixErrorBody:
    """Decode the platform error envelope, tolerating non-JSON bodies."""
    try:
        return decode(response.content, HelixErrorBody)
    except DecodeError:
        return HelixErrorBody(
            error=response.reason_phrase,
            status=response.status_code,
            message=response.text[:200],
        )


@dataclass
class Call:
    """One logical Helix call and the retry budget it has used."""
    method: str
    path: str
    params: Optional[Any] = None
    json: Optional[Any] = None
    headers: Optional[Dict[str, str]] = None
    credential_kind: CredentialKind = CredentialKind.ANY
    user_id: Optional[str] = None
    cost: int = 1
    # Retry accounting
    dispatches: int = field(default=0, init=False)
    failures: int = field(default=0, init=False)
    rate_limit_retries: int = field(default=0, init=False)
    auth_replayed: bool = field(default=False, init=False)

    def __str__(self) -> str:
        return f"{self.method} {self.path}"


class RequestExecutor:
    """Runs a :class:`Call` to completion against Helix.

    Each dispatch resolves a credential, takes a rate limit permit and sends
    the request. Every response, successful or not, feeds its rate headers
    back to the limiter before it is classified.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        retry: Optional[RetryConfig] = None,
        timeout: float = 5.0,
        request_queue_size: int = -1,
    ) -> None:
        """Initialize request executor.

        Args:
            client: HTTP client with the Helix base URL
            credentials: Credential store
            rate_limiter: Shared rate limiter
            retry: Retry configuration
            timeout: Default per-call deadline in seconds
            request_queue_size: Max calls executing at once, -1 for unbounded
        """
        self._client = client
        self._credentials = credentials
        self._rate_limiter = rate_limiter
        self._retry = retry or RetryConfig()
        self._timeout = timeout
        self._slots: Optional[asyncio.Semaphore] = None
        if request_queue_size > 0:
            self._slots = asyncio.Semaphore(request_queue_size)

    async def execute(self, call: Call, timeout: Optional[float] = None) -> httpx.Response:
        """Execute a call, retrying as its failures allow.

        Args:
            call: Call to execute
            timeout: Overall deadline in seconds, covering waits and retries

        Returns:
            Successful HTTP response

        Raises:
            NoCredentialError: No credential for the call
            AuthError: Still unauthorized after one refresh and replay
            RateLimitExceededError: Rate limit replays exhausted
            RequestError: Non-retryable client error
            TransportError: Network or server errors persisted
            HelixTimeoutError: Deadline expired
        """
        deadline = timeout if timeout is not None else self._timeout
        try:
            return await asyncio.wait_for(self._execute_in_slot(call), deadline)
        except asyncio.TimeoutError as e:
            if isinstance(e, HelixTimeoutError):
                raise
            raise HelixTimeoutError(
                f"{call} timed out after {call.dispatches} attempt(s)", timeout=deadline
            ) from None

    async def _execute_in_slot(self, call: Call) -> httpx.Response:
        if self._slots is None:
            return await self._execute(call)
        async with self._slots:
            return await self._execute(call)

    async def _execute(self, call: Call) -> httpx.Response:
        delays = backoff_delays(
            base_delay=self._retry.base_delay,
            max_delay=self._retry.max_delay,
            factor=self._retry.exponential_base,
            jitter=self._retry.jitter,
        )

        while True:
            credential = await self._credentials.resolve(call.credential_kind, call.user_id)

            try:
                response = await self._dispatch(call, credential)
            except httpx.TransportError as e:
                call.failures += 1
                if call.failures >= self._retry.max_attempts:
                    raise TransportError(
                        f"{call} failed after {call.dispatches} attempt(s): {e}",
                        cause=e,
                        attempts=call.dispatches,
                    ) from e
                delay = next(delays)
                logger.warning(
                    f"{call} failed (attempt {call.failures}/{self._retry.max_attempts}): {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue

            outcome = classify(response)
            logger.debug(f"{call} -> {response.status_code} ({outcome.value}, attempt {call.dispatches})")

            if outcome == ResponseClass.SUCCESS:
                return response

            if outcome == ResponseClass.UNAUTHORIZED:
                await self._handle_unauthorized(call, credential, response)
                continue

            if outcome == ResponseClass.RATE_LIMITED:
                self._handle_rate_limited(call, response)
                continue

            if outcome == ResponseClass.SERVER_ERROR:
                call.failures += 1
                if call.failures >= self._retry.max_attempts:
                    raise TransportError(
                        f"{call} failed after {call.dispatches} attempt(s): HTTP {response.status_code}",
                        last_response=response,
                        attempts=call.dispatches,
                    )
                delay = next(delays)
                logger.warning(
                    f"{call} returned HTTP {response.status_code} "
                    f"(attempt {call.failures}/{self._retry.max_attempts}). Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue

            error_body = decode_error_body(response)
            raise RequestError(
                error_body.message or f"HTTP {response.status_code}",
                status_code=response.status_code,
                error_body=error_body,
                attempts=call.dispatches,
            )

    async def _dispatch(self, call: Call, credential: Credential) -> httpx.Response:
        async with self._rate_limiter.permit(call.cost) as permit:
            request = self._client.build_request(
                call.method,
                call.path,
                params=call.params,
                json=call.json,
                headers=self._headers(call, credential),
            )
            permit.consume()
            call.dispatches += 1
            response = await self._client.send(request)

        self._rate_limiter.observe_headers(response.headers)
        return response

    @staticmethod
    def _headers(call: Call, credential: Credential) -> Dict[str, str]:
        headers = dict(call.headers or {})
        headers["Authorization"] = f"Bearer {credential.access_token}"
        headers["Client-Id"] = credential.client_id
        return headers

    async def _handle_unauthorized(
        self,
        call: Call,
        credential: Credential,
        response: httpx.Response,
    ) -> None:
        error_body = decode_error_body(response)
        if call.auth_replayed:
            raise AuthError(
                error_body.message or "Unauthorized after token refresh",
                error_body=error_body,
                attempts=call.dispatches,
            )

        call.auth_replayed = True
        self._credentials.mark_invalid(credential)
        logger.warning(f"{call} unauthorized, refreshing credential and replaying once")
        try:
            await self._credentials.refresh(credential)
        except RefreshError as e:
            raise AuthError(
                f"Unauthorized and token refresh failed: {e.message}",
                error_body=error_body,
                attempts=call.dispatches,
            ) from e

    def _handle_rate_limited(self, call: Call, response: httpx.Response) -> None:
        info = parse_rate_limit_headers(response.headers)
        if "remaining" not in info:
            self._rate_limiter.drain(info.get("reset"))

        call.rate_limit_retries += 1
        if call.rate_limit_retries > self._retry.rate_limit_retries:
            error_body = decode_error_body(response)
            raise RateLimitExceededError(
                error_body.message or "Rate limit exceeded",
                limit=info.get("limit"),
                remaining=info.get("remaining"),
                reset=info.get("reset"),
                error_body=error_body,
                attempts=call.dispatches,
            )

        logger.warning(
            f"{call} rate limited "
            f"(retry {call.rate_limit_retries}/{self._retry.rate_limit_retries}), waiting for budget"
        )
