"""Tests for request execution, classification and retry."""

import asyncio
import time

import httpx
import pytest

from twitchhelix.config import RetryConfig
from twitchhelix.errors import AuthError
from twitchhelix.errors import HelixTimeoutError
from twitchhelix.errors import RateLimitExceededError
from twitchhelix.errors import RequestError
from twitchhelix.errors import TransportError
from twitchhelix.executor import Call
from twitchhelix.executor import RequestExecutor
from twitchhelix.executor import ResponseClass
from twitchhelix.executor import classify
from twitchhelix.ratelimit import RateLimiter

FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.01, rate_limit_retries=2)


def rate_headers(remaining=700, limit=800, reset_in=60):
    return {
        "Ratelimit-Limit": str(limit),
        "Ratelimit-Remaining": str(remaining),
        "Ratelimit-Reset": str(int(time.time()) + reset_in),
    }


class Responder:
    """MockTransport handler replaying a scripted list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def build_executor(credential_store):
    """Factory for an executor around a scripted MockTransport."""
    clients = []

    def _build(handler, rate_limiter=None, retry=FAST_RETRY, timeout=5.0, request_queue_size=-1):
        client = httpx.AsyncClient(
            base_url="https://api.twitch.test/helix",
            transport=httpx.MockTransport(handler),
        )
        clients.append(client)
        return RequestExecutor(
            client,
            credential_store,
            rate_limiter or RateLimiter(),
            retry=retry,
            timeout=timeout,
            request_queue_size=request_queue_size,
        )

    return _build


class TestClassify:
    """Test response classification."""

    @pytest.mark.parametrize("status, expected", [
        (200, ResponseClass.SUCCESS),
        (202, ResponseClass.SUCCESS),
        (204, ResponseClass.SUCCESS),
        (400, ResponseClass.CLIENT_ERROR),
        (401, ResponseClass.UNAUTHORIZED),
        (403, ResponseClass.CLIENT_ERROR),
        (404, ResponseClass.CLIENT_ERROR),
        (409, ResponseClass.CLIENT_ERROR),
        (429, ResponseClass.RATE_LIMITED),
        (500, ResponseClass.SERVER_ERROR),
        (503, ResponseClass.SERVER_ERROR),
    ])
    def test_classify(self, status, expected):
        """Test the classification of each status family."""
        assert classify(httpx.Response(status)) == expected


class TestRequestExecutorSuccess:
    """Test successful dispatch."""

    @pytest.mark.asyncio
    async def test_attaches_auth_headers(self, build_executor):
        """Test that every call carries the bearer token and client id."""
        responder = Responder(httpx.Response(200, json={"data": []}))
        executor = build_executor(responder)

        response = await executor.execute(Call("GET", "/users"))

        assert response.status_code == 200
        request = responder.requests[0]
        assert request.headers["Authorization"] == "Bearer user_token"
        assert request.headers["Client-Id"] == "test_client_id"
        assert request.url.path == "/helix/users"

    @pytest.mark.asyncio
    async def test_observes_rate_headers(self, build_executor):
        """Test that the limiter tracks the server-reported budget."""
        limiter = RateLimiter()
        responder = Responder(httpx.Response(200, json={}, headers=rate_headers(remaining=321)))
        executor = build_executor(responder, rate_limiter=limiter)

        await executor.execute(Call("GET", "/users"))

        assert limiter.budget.remaining == 321

    @pytest.mark.asyncio
    async def test_observes_rate_headers_on_errors(self, build_executor):
        """Test that error responses also update the budget."""
        limiter = RateLimiter()
        responder = Responder(
            httpx.Response(400, json={"error": "Bad Request", "status": 400, "message": "bad"},
                           headers=rate_headers(remaining=42))
        )
        executor = build_executor(responder, rate_limiter=limiter)

        with pytest.raises(RequestError):
            await executor.execute(Call("GET", "/users"))

        assert limiter.budget.remaining == 42

    @pytest.mark.asyncio
    async def test_request_queue_size_bounds_concurrency(self, build_executor):
        """Test that request_queue_size caps calls in flight."""
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200, json={})

        executor = build_executor(handler, request_queue_size=2)

        await asyncio.gather(*(executor.execute(Call("GET", "/users")) for _ in range(6)))

        assert peak == 2


class TestRequestExecutorUnauthorized:
    """Test 401 handling."""

    @pytest.mark.asyncio
    async def test_refresh_and_replay_once(self, build_executor, refresher):
        """Test that a 401 refreshes the credential and replays with the new token."""
        responder = Responder(
            httpx.Response(401, json={"error": "Unauthorized", "status": 401, "message": "Invalid OAuth token"}),
            httpx.Response(200, json={"data": []}),
        )
        executor = build_executor(responder)
        call = Call("GET", "/users")

        response = await executor.execute(call)

        assert response.status_code == 200
        assert refresher.calls == 1
        assert call.dispatches == 2
        assert responder.requests[1].headers["Authorization"] == "Bearer refreshed_1"

    @pytest.mark.asyncio
    async def test_second_401_raises_without_third_attempt(self, build_executor, refresher):
        """Test that a second consecutive 401 yields AuthError."""
        responder = Responder(
            httpx.Response(401, json={"error": "Unauthorized", "status": 401, "message": "Invalid OAuth token"}),
        )
        executor = build_executor(responder)

        with pytest.raises(AuthError) as exc_info:
            await executor.execute(Call("GET", "/users"))

        assert len(responder.requests) == 2
        assert refresher.calls == 1
        assert exc_info.value.status_code == 401
        assert exc_info.value.attempts == 2
        assert exc_info.value.error_body.message == "Invalid OAuth token"

    @pytest.mark.asyncio
    async def test_refresh_failure_raises_auth_error(self, build_executor, refresher):
        """Test that a failed refresh after a 401 surfaces as AuthError."""
        refresher.fail = True
        responder = Responder(httpx.Response(401, json={"status": 401, "message": "expired"}))
        executor = build_executor(responder)

        with pytest.raises(AuthError):
            await executor.execute(Call("GET", "/users"))

        assert len(responder.requests) == 1


class TestRequestExecutorRateLimited:
    """Test 429 handling."""

    @pytest.mark.asyncio
    async def test_replays_after_429(self, build_executor):
        """Test that a 429 is replayed without using the general retry budget."""
        responder = Responder(
            httpx.Response(429, json={"status": 429, "message": "Too Many Requests"},
                           headers=rate_headers(remaining=5)),
            httpx.Response(200, json={}),
        )
        executor = build_executor(responder)
        call = Call("GET", "/users")

        response = await executor.execute(call)

        assert response.status_code == 200
        assert call.rate_limit_retries == 1
        assert call.failures == 0

    @pytest.mark.asyncio
    async def test_exhausted_429_replays_at_server_reset(self, build_executor):
        """Test that a 429 reporting zero points replays once the reported reset passes."""
        headers = rate_headers(remaining=0, reset_in=1)
        reset = int(headers["Ratelimit-Reset"])
        responder = Responder(
            httpx.Response(429, json={"status": 429, "message": "Too Many Requests"}, headers=headers),
            httpx.Response(200, json={}),
        )
        # Default limiter seeds a 60 second window the server's reset must override
        executor = build_executor(responder, rate_limiter=RateLimiter())

        response = await executor.execute(Call("GET", "/users"))

        assert response.status_code == 200
        assert len(responder.requests) == 2
        assert time.time() >= reset

    @pytest.mark.asyncio
    async def test_exhausted_budget_delays_next_call_until_reset(self, build_executor):
        """Test that a success reporting zero points holds the next call until the reset."""
        headers = rate_headers(remaining=0, reset_in=1)
        reset = int(headers["Ratelimit-Reset"])
        responder = Responder(
            httpx.Response(200, json={}, headers=headers),
            httpx.Response(200, json={}),
        )
        executor = build_executor(responder, rate_limiter=RateLimiter())

        await executor.execute(Call("GET", "/users"))
        await executor.execute(Call("GET", "/users"))

        assert len(responder.requests) == 2
        assert time.time() >= reset

    @pytest.mark.asyncio
    async def test_third_call_waits_for_window(self, build_executor):
        """Test that with capacity 2 the third executed call is sent only after the reset."""
        limiter = RateLimiter(capacity=2, window=0.3)
        reset_at = limiter.budget.reset_at
        sent = []

        def handler(request):
            sent.append(time.time())
            return httpx.Response(200, json={})

        executor = build_executor(handler, rate_limiter=limiter)

        for _ in range(3):
            await executor.execute(Call("GET", "/users"))

        assert len(sent) == 3
        assert sent[1] < reset_at
        assert sent[2] >= reset_at

    @pytest.mark.asyncio
    async def test_429_without_headers_waits_for_reset(self, build_executor):
        """Test that a bare 429 drains the budget so the replay waits for the window."""
        limiter = RateLimiter(capacity=10, window=0.2)
        reset_at = limiter.budget.reset_at
        responder = Responder(
            httpx.Response(429, json={"status": 429, "message": "Too Many Requests"}),
            httpx.Response(200, json={}),
        )
        executor = build_executor(responder, rate_limiter=limiter)

        await executor.execute(Call("GET", "/users"))

        assert len(responder.requests) == 2
        assert time.time() >= reset_at

    @pytest.mark.asyncio
    async def test_rate_limit_retries_exhausted(self, build_executor):
        """Test RateLimitExceededError after the rate-limit-specific retries."""
        responder = Responder(
            httpx.Response(429, json={"status": 429, "message": "Too Many Requests"},
                           headers=rate_headers(remaining=5)),
        )
        executor = build_executor(responder)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await executor.execute(Call("GET", "/users"))

        # First attempt plus two replays
        assert len(responder.requests) == 3
        assert exc_info.value.limit == 800
        assert exc_info.value.remaining == 5


class TestRequestExecutorTransient:
    """Test 5xx and network failure handling."""

    @pytest.mark.asyncio
    async def test_server_error_then_success(self, build_executor):
        """Test that a 5xx is retried with backoff."""
        responder = Responder(httpx.Response(503), httpx.Response(200, json={}))
        executor = build_executor(responder)
        call = Call("GET", "/users")

        response = await executor.execute(call)

        assert response.status_code == 200
        assert call.failures == 1

    @pytest.mark.asyncio
    async def test_server_error_exhaustion(self, build_executor):
        """Test TransportError with the last response after max attempts."""
        responder = Responder(httpx.Response(503, text="unavailable"))
        executor = build_executor(responder)

        with pytest.raises(TransportError) as exc_info:
            await executor.execute(Call("GET", "/users"))

        assert len(responder.requests) == 3
        assert exc_info.value.status_code == 503
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_network_error_exhaustion(self, build_executor):
        """Test TransportError carrying the network cause."""
        responder = Responder(httpx.ConnectError("connection refused"))
        executor = build_executor(responder)

        with pytest.raises(TransportError) as exc_info:
            await executor.execute(Call("GET", "/users"))

        assert len(responder.requests) == 3
        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, build_executor):
        """Test that a 4xx other than 401/429 surfaces immediately."""
        responder = Responder(
            httpx.Response(400, json={"error": "Bad Request", "status": 400, "message": "Missing required parameter"}),
        )
        executor = build_executor(responder)

        with pytest.raises(RequestError) as exc_info:
            await executor.execute(Call("GET", "/users"))

        assert len(responder.requests) == 1
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_body.message == "Missing required parameter"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, build_executor):
        """Test decoding an error response that is not JSON."""
        responder = Responder(httpx.Response(404, text="<html>not found</html>"))
        executor = build_executor(responder)

        with pytest.raises(RequestError) as exc_info:
            await executor.execute(Call("GET", "/nope"))

        assert exc_info.value.error_body.status == 404
        assert "not found" in exc_info.value.error_body.message

    @pytest.mark.asyncio
    async def test_deadline(self, build_executor):
        """Test that the overall deadline raises HelixTimeoutError."""

        async def slow(request):
            await asyncio.sleep(1.0)
            return httpx.Response(200, json={})

        executor = build_executor(slow)

        with pytest.raises(HelixTimeoutError) as exc_info:
            await executor.execute(Call("GET", "/users"), timeout=0.05)

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout == 0.05
