"""Test configuration and fixtures."""

import asyncio
import json
import uuid
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

import httpx
import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

from twitchhelix.config import EventSocketConfig
from twitchhelix.config import HelixConfig
from twitchhelix.config import RetryConfig
from twitchhelix.credentials import CredentialStore
from twitchhelix.credentials import TokenRefresher
from twitchhelix.errors import RefreshError
from twitchhelix.models import Credential
from twitchhelix.models import Subscription
from twitchhelix.models import TransportBinding

CLIENT_ID = "test_client_id"


class FakeRefresher(TokenRefresher):
    """Refresher that hands out numbered tokens and counts its calls."""

    def __init__(self, delay: float = 0.0, fail: bool = False) -> None:
        self.delay = delay
        self.fail = fail
        self.calls = 0
        self.app_calls = 0

    def can_refresh(self, credential: Credential) -> bool:
        return True

    async def refresh(self, credential: Credential) -> Credential:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RefreshError("refresh rejected", status_code=400)
        return credential.model_copy(
            update={
                "access_token": f"refreshed_{self.calls}",
                "expires_at": datetime.now(timezone.utc) + timedelta(hours=4),
            }
        )


class FakeWebSocket:
    """In-memory stand-in for a client WebSocket connection."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.on_close: Optional[Callable[[], None]] = None

    def feed(self, message: Dict[str, Any]) -> None:
        self.inbox.put_nowait(json.dumps(message))

    def feed_raw(self, raw: str) -> None:
        self.inbox.put_nowait(raw)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        self.inbox.put_nowait(Close(code, reason))

    async def recv(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, Close):
            raise ConnectionClosed(item, None)
        return item

    async def close(self) -> None:
        if not self.closed and self.on_close is not None:
            self.on_close()
        self.closed = True


class FakeEventSubServer:
    """Connector that records every connection it opens.

    ``on_connect`` runs for each new connection, typically to queue a welcome.
    Exceptions in ``failures`` are raised by successive connects first.
    """

    def __init__(self) -> None:
        self.connections: List[FakeWebSocket] = []
        self.failures: List[BaseException] = []
        self.on_connect: Optional[Callable[[FakeWebSocket], None]] = None
        self.attempts = 0

    async def connect(self, url: str) -> FakeWebSocket:
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        websocket = FakeWebSocket(url)
        self.connections.append(websocket)
        if self.on_connect is not None:
            self.on_connect(websocket)
        return websocket


class Frames:
    """Builders for EventSub WebSocket messages."""

    @staticmethod
    def _envelope(message_type: str, payload: Dict[str, Any], **metadata: Any) -> Dict[str, Any]:
        return {
            "metadata": {
                "message_id": metadata.pop("message_id", None) or str(uuid.uuid4()),
                "message_type": message_type,
                "message_timestamp": "2024-01-01T12:00:00.000000000Z",
                **metadata,
            },
            "payload": payload,
        }

    def welcome(self, session_id: str = "session-1", keepalive: int = 10) -> Dict[str, Any]:
        return self._envelope(
            "session_welcome",
            {
                "session": {
                    "id": session_id,
                    "status": "connected",
                    "connected_at": "2024-01-01T12:00:00.000000000Z",
                    "keepalive_timeout_seconds": keepalive,
                    "reconnect_url": None,
                }
            },
        )

    def keepalive(self) -> Dict[str, Any]:
        return self._envelope("session_keepalive", {})

    def reconnect(self, url: str, session_id: str = "session-1") -> Dict[str, Any]:
        return self._envelope(
            "session_reconnect",
            {
                "session": {
                    "id": session_id,
                    "status": "reconnecting",
                    "keepalive_timeout_seconds": None,
                    "reconnect_url": url,
                    "connected_at": "2024-01-01T12:00:00.000000000Z",
                }
            },
        )

    def subscription(
        self,
        subscription_id: str = "sub-1",
        subscription_type: str = "channel.chat.message",
        version: str = "1",
        status: str = "enabled",
        session_id: str = "session-1",
    ) -> Dict[str, Any]:
        return {
            "id": subscription_id,
            "type": subscription_type,
            "version": version,
            "status": status,
            "cost": 0,
            "condition": {"broadcaster_user_id": "1001", "user_id": "2002"},
            "transport": {"method": "websocket", "session_id": session_id},
            "created_at": "2024-01-01T12:00:00.000000000Z",
        }

    def notification(
        self,
        event: Dict[str, Any],
        message_id: Optional[str] = None,
        **subscription: Any,
    ) -> Dict[str, Any]:
        sub = self.subscription(**subscription)
        return self._envelope(
            "notification",
            {"subscription": sub, "event": event},
            message_id=message_id,
            subscription_type=sub["type"],
            subscription_version=sub["version"],
        )

    def revocation(self, subscription_id: str = "sub-1", status: str = "authorization_revoked") -> Dict[str, Any]:
        sub = self.subscription(subscription_id=subscription_id, status=status)
        return self._envelope(
            "revocation",
            {"subscription": sub},
            subscription_type=sub["type"],
            subscription_version=sub["version"],
        )

    @staticmethod
    def chat_event(text: str = "hello") -> Dict[str, Any]:
        return {
            "broadcaster_user_id": "1001",
            "broadcaster_user_login": "streamer",
            "broadcaster_user_name": "Streamer",
            "chatter_user_id": "2002",
            "chatter_user_login": "viewer",
            "chatter_user_name": "Viewer",
            "message_id": str(uuid.uuid4()),
            "message": {"text": text, "fragments": [{"type": "text", "text": text}]},
            "color": "#FF0000",
            "badges": [],
        }


@pytest.fixture
def app_credential():
    """App access token fixture."""
    return Credential(
        client_id=CLIENT_ID,
        access_token="app_token",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def user_credential():
    """User access token fixture."""
    return Credential(
        client_id=CLIENT_ID,
        user_id="2002",
        login="viewer",
        scopes=("user:read:chat",),
        access_token="user_token",
        refresh_token="user_refresh",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def refresher():
    """Counting token refresher fixture."""
    return FakeRefresher()


@pytest.fixture
def credential_store(refresher, user_credential):
    """Credential store holding the user credential."""
    store = CredentialStore(refresher)
    store.add(user_credential)
    return store


@pytest.fixture
def helix_config():
    """Helix configuration with fast retries."""
    return HelixConfig(
        client_id=CLIENT_ID,
        base_url="https://api.twitch.test/helix",
        timeout=5.0,
        retry=RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.01, rate_limit_retries=2),
    )


@pytest.fixture
def socket_config():
    """EventSub configuration with short timeouts and no reconnects."""
    return EventSocketConfig(
        url="ws://eventsub.test/ws",
        auto_reconnect=False,
        handshake_timeout=1.0,
        reconnect_timeout=1.0,
        open_timeout=1.0,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        keepalive_grace=0.0,
    )


@pytest.fixture
def frames():
    """EventSub message builders."""
    return Frames()


@pytest.fixture
def fake_server():
    """Fake EventSub server; connect with ``fake_server.connect``."""
    return FakeEventSubServer()


@pytest.fixture
def websocket_subscription():
    """Subscription bound to session-1."""
    return Subscription(
        id="sub-1",
        type="channel.chat.message",
        version="1",
        condition={"broadcaster_user_id": "1001", "user_id": "2002"},
        transport=TransportBinding.websocket("session-1"),
    )


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait_until


def json_response(
    status_code: int,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    """Build an httpx response with a JSON body."""
    content = b"" if body is None else json.dumps(body).encode()
    return httpx.Response(status_code, content=content, headers=headers or {})


@pytest.fixture
def make_response():
    """Factory for JSON httpx responses."""
    return json_response
