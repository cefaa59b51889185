"""EventSub WebSocket session with keepalive supervision and reconnect handoff."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Deque
from typing import Dict
from typing import Iterator
from typing import Optional
from typing import Set
from typing import Tuple
from typing import Union

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.exceptions import WebSocketException

from twitchhelix.config import EventSocketConfig
from twitchhelix.errors import DecodeError
from twitchhelix.errors import HelixTimeoutError
from twitchhelix.errors import SessionFailure
from twitchhelix.errors import TwitchHelixError
from twitchhelix.models import Session
from twitchhelix.models import ShardStatus
from twitchhelix.models import Subscription
from twitchhelix.models import SubscriptionStatus
from twitchhelix.registry import SubscriptionRegistry
from twitchhelix.subscriptions import SubscriptionCatalog
from twitchhelix.subscriptions import SubscriptionType
from twitchhelix.subscriptions import default_catalog
from twitchhelix.utils import backoff_delays
from twitchhelix.utils import invoke_callback
from twitchhelix.websocket.messages import MessageType
from twitchhelix.websocket.messages import SessionPayload
from twitchhelix.websocket.messages import SocketMessage
from twitchhelix.websocket.messages import parse_message

if TYPE_CHECKING:
    from twitchhelix.client import HelixClient

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]

CLOSE_CODE_STATUS: Dict[int, ShardStatus] = {
    1000: ShardStatus.WEBSOCKET_DISCONNECTED,
    1001: ShardStatus.WEBSOCKET_DISCONNECTED,
    1006: ShardStatus.WEBSOCKET_NETWORK_ERROR,
    1011: ShardStatus.WEBSOCKET_INTERNAL_ERROR,
    4000: ShardStatus.WEBSOCKET_INTERNAL_ERROR,
    4001: ShardStatus.WEBSOCKET_RECEIVED_INBOUND_TRAFFIC,
    4002: ShardStatus.WEBSOCKET_FAILED_PING_PONG,
    4003: ShardStatus.WEBSOCKET_DISCONNECTED,  # connection unused
    4004: ShardStatus.WEBSOCKET_FAILED_TO_RECONNECT,  # reconnect grace time expired
    4005: ShardStatus.WEBSOCKET_NETWORK_TIMEOUT,
    4006: ShardStatus.WEBSOCKET_NETWORK_ERROR,
    4007: ShardStatus.WEBSOCKET_FAILED_TO_RECONNECT,  # invalid reconnect
}


def status_for_close_code(code: Optional[int]) -> ShardStatus:
    """Shard status describing a WebSocket close code."""
    if code is None:
        return ShardStatus.WEBSOCKET_NETWORK_ERROR
    return CLOSE_CODE_STATUS.get(code, ShardStatus.WEBSOCKET_DISCONNECTED)


class SessionState(str, Enum):
    """Lifecycle state of an :class:`EventSocketSession`."""
    CONNECTING = "connecting"
    WELCOMED = "welcomed"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class SessionCallbacks:
    """Application callbacks. Each may be sync or async; exceptions are logged."""
    on_welcomed: Optional[Callable[[str], Any]] = None
    on_notification: Optional[Callable[[Subscription, Any], Any]] = None
    on_revoked: Optional[Callable[[str, SubscriptionStatus], Any]] = None
    on_session_failed: Optional[Callable[[ShardStatus], Any]] = None
    on_state_changed: Optional[Callable[[SessionState], Any]] = None
    on_closed: Optional[Callable[[], Any]] = None


@dataclass
class _Closed:
    """Queue marker for the end of a connection."""
    code: Optional[int]
    reason: str = ""


QueueItem = Tuple[float, Union[str, bytes, _Closed]]


class _Connection:
    """One WebSocket connection and its reader.

    The reader stamps each frame with the monotonic clock when it is
    enqueued. The queue is bounded, so a slow consumer stops the reader and
    the socket's own buffers apply backpressure to the server.
    """

    def __init__(
        self,
        websocket: Any,
        url: str,
        queue_size: int,
        clock: Callable[[], float],
    ) -> None:
        self.websocket = websocket
        self.url = url
        self.last_received = clock()
        self._clock = clock
        self._queue: asyncio.Queue[QueueItem] = asyncio.Queue(maxsize=queue_size)
        self._reader = asyncio.ensure_future(self._read())

    async def _read(self) -> None:
        try:
            while True:
                raw = await self.websocket.recv()
                await self._queue.put((self._clock(), raw))
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else 1006
            reason = e.rcvd.reason if e.rcvd is not None else ""
            logger.debug(f"Connection to {self.url} closed with code {code} {reason}")
            await self._queue.put((self._clock(), _Closed(code, reason)))
        except OSError as e:
            logger.debug(f"Connection to {self.url} failed: {e}")
            await self._queue.put((self._clock(), _Closed(1006, str(e))))

    async def next(self, timeout: Optional[float] = None) -> Optional[QueueItem]:
        """Next queued frame, or None if nothing arrived within the timeout."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return None

    def pending(self) -> Iterator[QueueItem]:
        """Drain frames that are already queued."""
        while True:
            try:
                yield self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    async def close(self) -> None:
        self._reader.cancel()
        try:
            await self._reader
        except asyncio.CancelledError:
            pass
        try:
            await self.websocket.close()
        except Exception as e:
            logger.warning(f"Error closing WebSocket {self.url}: {e}")


class EventSocketSession:
    """Owns the EventSub WebSocket connection for one client.

    States run ``CONNECTING -> WELCOMED -> ACTIVE``; a ``session_reconnect``
    moves to ``RECONNECTING`` while a second connection is welcomed, and any
    terminal problem moves to ``FAILED``. From ``FAILED`` the session connects
    from scratch up to ``max_reconnect_attempts`` times before it is ``CLOSED``.
    Failures are reported through callbacks and never raised to the caller.

    Example:
        ```python
        async def on_welcomed(session_id):
            await session.subscribe(helix, CHANNEL_CHAT_MESSAGE, condition)

        session = EventSocketSession(callbacks=SessionCallbacks(on_welcomed=on_welcomed))
        await session.start()
        await session.wait_closed()
        ```
    """

    def __init__(
        self,
        config: Optional[EventSocketConfig] = None,
        callbacks: Optional[SessionCallbacks] = None,
        registry: Optional[SubscriptionRegistry] = None,
        catalog: Optional[SubscriptionCatalog] = None,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize EventSub session.

        Args:
            config: Session configuration
            callbacks: Application callbacks
            registry: Subscription registry, shared with the application
            catalog: Catalog used to decode notification events
            connector: Opens a WebSocket for a URL; defaults to ``websockets.connect``
            clock: Monotonic clock used for keepalive deadlines
        """
        self.config = config or EventSocketConfig()
        self.callbacks = callbacks or SessionCallbacks()
        self._registry = registry or SubscriptionRegistry()
        self._catalog = catalog or default_catalog()
        self._connector = connector or self._connect
        self._clock = clock

        self._state = SessionState.CLOSED
        self._session = Session()
        self._connection: Optional[_Connection] = None
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[None]] = None
        self._closing = False
        self._welcomed = asyncio.Event()
        self._closed = asyncio.Event()

        self._seen_ids: Set[str] = set()
        self._seen_order: Deque[str] = deque()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session:
        """Current session; replaced on every handoff and fresh connect."""
        return self._session

    @property
    def session_id(self) -> Optional[str]:
        return self._session.session_id

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    async def __aenter__(self) -> EventSocketSession:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Start connecting in the background."""
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._closed.clear()
        self._welcomed.clear()
        self._task = asyncio.ensure_future(self._run())

    async def close(self) -> None:
        """Close the session and stop reconnecting."""
        self._closing = True
        task = self._task
        if task is None or task.done():
            return

        if task is asyncio.current_task():
            # Called from a callback; the run loop exits once it returns
            if self._connection is not None:
                await self._connection.close()
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait_closed(self) -> None:
        """Wait until the session is permanently closed."""
        await self._closed.wait()

    async def wait_welcomed(self, timeout: Optional[float] = None) -> str:
        """Wait for a welcomed session.

        Returns:
            Session id

        Raises:
            HelixTimeoutError: No welcome within the timeout
            SessionFailure: The session closed before a welcome arrived
        """
        welcomed = asyncio.ensure_future(self._welcomed.wait())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {welcomed, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            welcomed.cancel()
            closed.cancel()

        if self._welcomed.is_set() and self.session_id:
            return self.session_id
        if not done:
            raise HelixTimeoutError("Timed out waiting for session welcome", timeout=timeout)
        raise SessionFailure(self._session.status, "Session closed before it was welcomed")

    async def subscribe(
        self,
        helix: HelixClient,
        subscription_type: Union[SubscriptionType, str],
        condition: Dict[str, Any],
        version: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Subscription:
        """Create a subscription on this session and track it.

        Raises:
            TwitchHelixError: Session is not active, or the Helix call failed
        """
        session_id = self.session_id
        if self._state != SessionState.ACTIVE or session_id is None:
            raise TwitchHelixError("Session is not active", "SESSION_NOT_ACTIVE")

        subscription = await helix.subscribe_websocket(
            subscription_type, condition, session_id, version=version, user_id=user_id
        )
        # A handoff during the call has already moved existing bindings
        self._registry.bind(subscription, self.session_id or session_id)
        return subscription

    # Run loop

    async def _run(self) -> None:
        attempts = 0
        delays = self._reconnect_delays()
        try:
            while not self._closing:
                try:
                    await self._serve(self.config.connect_url())
                    break
                except SessionFailure as failure:
                    was_welcomed = self._session.session_id is not None
                    await self._fail(failure)
                except Exception as e:
                    logger.error(f"Unexpected error in EventSub session: {e}", exc_info=True)
                    was_welcomed = self._session.session_id is not None
                    await self._fail(SessionFailure(ShardStatus.WEBSOCKET_INTERNAL_ERROR, str(e)))

                if self._closing or not self.config.auto_reconnect:
                    break

                if was_welcomed:
                    attempts = 0
                    delays = self._reconnect_delays()
                attempts += 1
                if attempts > self.config.max_reconnect_attempts:
                    logger.error(
                        f"Giving up after {self.config.max_reconnect_attempts} reconnect attempt(s)"
                    )
                    break

                delay = next(delays)
                logger.info(
                    f"Reconnecting in {delay:.1f}s "
                    f"(attempt {attempts}/{self.config.max_reconnect_attempts})"
                )
                await asyncio.sleep(delay)
        finally:
            await self._shutdown()

    def _reconnect_delays(self) -> Iterator[float]:
        return backoff_delays(
            base_delay=self.config.reconnect_base_delay,
            max_delay=self.config.reconnect_max_delay,
        )

    async def _serve(self, url: str) -> None:
        self._session = Session(url=url)
        await self._set_state(SessionState.CONNECTING)
        try:
            connection = await self._open(url)
            self._connection = connection
            welcome = await self._handshake(connection, self.config.handshake_timeout)
            await self._activate(connection, welcome)
            await self._process()
        finally:
            await self._close_connection()

    async def _connect(self, url: str) -> Any:
        return await websockets.connect(
            url,
            open_timeout=self.config.open_timeout,
            max_size=self.config.max_message_size,
            ping_interval=None,
        )

    async def _open(self, url: str) -> _Connection:
        logger.info(f"Connecting to EventSub WebSocket: {url}")
        try:
            websocket = await asyncio.wait_for(self._connector(url), self.config.open_timeout)
        except asyncio.TimeoutError as e:
            raise SessionFailure(
                ShardStatus.WEBSOCKET_NETWORK_TIMEOUT, f"Timed out connecting to {url}"
            ) from e
        except (OSError, WebSocketException) as e:
            raise SessionFailure(
                ShardStatus.WEBSOCKET_NETWORK_ERROR, f"Failed to connect to {url}: {e}"
            ) from e
        return _Connection(websocket, url, self.config.message_queue_size, self._clock)

    async def _handshake(self, connection: _Connection, timeout: float) -> SessionPayload:
        """Wait for the welcome that must be the first message."""
        item = await connection.next(timeout)
        if item is None:
            raise SessionFailure(
                ShardStatus.WEBSOCKET_NETWORK_TIMEOUT, f"No session_welcome within {timeout}s"
            )

        received_at, raw = item
        if isinstance(raw, _Closed):
            raise SessionFailure(
                status_for_close_code(raw.code),
                f"Closed before welcome ({raw.code} {raw.reason})".strip(),
                code=raw.code,
            )

        try:
            message = parse_message(raw)
            if message.message_type != MessageType.SESSION_WELCOME:
                raise SessionFailure(
                    ShardStatus.WEBSOCKET_INTERNAL_ERROR,
                    f"Expected session_welcome, got {message.message_type.value}",
                )
            welcome = message.session()
        except DecodeError as e:
            raise SessionFailure(
                ShardStatus.WEBSOCKET_INTERNAL_ERROR, f"Malformed welcome: {e}"
            ) from e

        connection.last_received = received_at
        self._remember(message.message_id)
        return welcome

    def _new_session(self, connection: _Connection, welcome: SessionPayload) -> Session:
        return Session(
            session_id=welcome.id,
            status=ShardStatus.ENABLED,
            keepalive_timeout_seconds=welcome.keepalive_timeout_seconds,
            url=connection.url,
            connected_at=welcome.connected_at,
        )

    async def _activate(self, connection: _Connection, welcome: SessionPayload) -> None:
        async with self._lock:
            self._connection = connection
            self._session = self._new_session(connection, welcome)

        logger.info(
            f"EventSub session {welcome.id} welcomed "
            f"(keepalive {welcome.keepalive_timeout_seconds}s)"
        )
        await self._set_state(SessionState.WELCOMED)
        await self._set_state(SessionState.ACTIVE)
        self._welcomed.set()
        await invoke_callback(self.callbacks.on_welcomed, welcome.id)

    async def _process(self) -> None:
        """Process frames in arrival order until failure or close."""
        while not self._closing:
            connection = self._connection
            assert connection is not None

            deadline: Optional[float] = None
            timeout: Optional[float] = None
            keepalive = self._session.keepalive_timeout_seconds
            if keepalive:
                deadline = connection.last_received + keepalive + self.config.keepalive_grace
                timeout = max(deadline - self._clock(), 0.0)

            item = await connection.next(timeout)
            # Deadlines compare enqueue times, so a frame that arrived in time
            # still counts even if processing it was delayed
            if item is None or (deadline is not None and item[0] > deadline):
                raise SessionFailure(
                    ShardStatus.WEBSOCKET_FAILED_PING_PONG,
                    f"No message within {keepalive}s keepalive timeout",
                )

            received_at, raw = item
            connection.last_received = received_at
            if isinstance(raw, _Closed):
                if self._closing:
                    return
                raise SessionFailure(
                    status_for_close_code(raw.code),
                    f"Connection closed ({raw.code} {raw.reason})".strip(),
                    code=raw.code,
                )

            await self._dispatch(raw, connection)

    async def _dispatch(self, raw: Union[str, bytes], connection: _Connection) -> None:
        try:
            message = parse_message(raw)
        except DecodeError as e:
            logger.warning(f"Dropping malformed message: {e}")
            return

        if message.message_id in self._seen_ids:
            logger.debug(f"Dropping duplicate message {message.message_id}")
            return
        self._remember(message.message_id)

        message_type = message.message_type
        logger.debug(f"Received {message_type.value} {message.message_id}")

        if message_type == MessageType.SESSION_KEEPALIVE:
            return
        if message_type == MessageType.NOTIFICATION:
            await self._on_notification(message)
        elif message_type == MessageType.REVOCATION:
            await self._on_revocation(message)
        elif message_type == MessageType.SESSION_RECONNECT:
            if connection is self._connection:
                await self._handoff(message)
            else:
                logger.warning("Ignoring session_reconnect from a replaced connection")
        elif message_type == MessageType.SESSION_WELCOME:
            logger.warning("Ignoring session_welcome on an established session")
        else:
            logger.debug(f"Ignoring message of unknown type {message.message_id}")

    def _remember(self, message_id: str) -> None:
        self._seen_ids.add(message_id)
        self._seen_order.append(message_id)
        while len(self._seen_order) > self.config.duplicate_window:
            self._seen_ids.discard(self._seen_order.popleft())

    async def _on_notification(self, message: SocketMessage) -> None:
        try:
            subscription = message.subscription()
            event = self._catalog.decode_event(
                subscription.type, subscription.version, message.event()
            )
        except DecodeError as e:
            logger.warning(f"Dropping notification {message.message_id}: {e}")
            return
        await invoke_callback(self.callbacks.on_notification, subscription, event)

    async def _on_revocation(self, message: SocketMessage) -> None:
        try:
            subscription = message.subscription()
        except DecodeError as e:
            logger.warning(f"Dropping revocation {message.message_id}: {e}")
            return
        self._registry.on_revoked(subscription.id, subscription.status, subscription)
        await invoke_callback(self.callbacks.on_revoked, subscription.id, subscription.status)

    # Reconnect handoff

    async def _handoff(self, message: SocketMessage) -> None:
        """Move to the server-supplied URL while the current connection stays open."""
        try:
            url = message.session().reconnect_url
        except DecodeError as e:
            raise SessionFailure(
                ShardStatus.WEBSOCKET_INTERNAL_ERROR, f"Malformed session_reconnect: {e}"
            ) from e
        if not url:
            raise SessionFailure(
                ShardStatus.WEBSOCKET_INTERNAL_ERROR, "session_reconnect without reconnect_url"
            )

        old_connection = self._connection
        old_session_id = self._session.session_id
        assert old_connection is not None and old_session_id is not None

        self._session.reconnect_url = url
        await self._set_state(SessionState.RECONNECTING)
        logger.info(f"EventSub session {old_session_id} reconnecting to {url}")

        try:
            connection, welcome = await asyncio.wait_for(
                self._open_and_welcome(url), self.config.reconnect_timeout
            )
        except (SessionFailure, asyncio.TimeoutError) as e:
            raise SessionFailure(
                ShardStatus.WEBSOCKET_FAILED_TO_RECONNECT, f"Reconnect to {url} failed: {e}"
            ) from e

        async with self._lock:
            self._connection = connection
            self._session = self._new_session(connection, welcome)
            self._registry.rebind_all(old_session_id, welcome.id)

        logger.info(f"EventSub session handed off from {old_session_id} to {welcome.id}")
        await self._set_state(SessionState.ACTIVE)

        # Frames the old connection queued before the swap are still delivered
        for _, raw in old_connection.pending():
            if not isinstance(raw, _Closed):
                await self._dispatch(raw, old_connection)
        await old_connection.close()

    async def _open_and_welcome(self, url: str) -> Tuple[_Connection, SessionPayload]:
        connection = await self._open(url)
        try:
            welcome = await self._handshake(connection, self.config.reconnect_timeout)
        except BaseException:
            await connection.close()
            raise
        return connection, welcome

    # Failure and shutdown

    async def _fail(self, failure: SessionFailure) -> None:
        status = failure.status
        session_id = self._session.session_id
        logger.warning(f"EventSub session {session_id or '(unwelcomed)'} failed: {failure}")

        self._welcomed.clear()
        self._session.status = status
        await self._close_connection()
        await self._set_state(SessionState.FAILED)

        if session_id is not None:
            self._registry.detach_transport(session_id, status)
        await invoke_callback(self.callbacks.on_session_failed, status)

    async def _close_connection(self) -> None:
        async with self._lock:
            connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()

    async def _shutdown(self) -> None:
        await self._close_connection()
        self._welcomed.clear()
        if self._state != SessionState.CLOSED:
            await self._set_state(SessionState.CLOSED)
        logger.info("EventSub session closed")
        self._closed.set()
        await invoke_callback(self.callbacks.on_closed)

    async def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug(f"EventSub session state {self._state.value} -> {state.value}")
        self._state = state
        await invoke_callback(self.callbacks.on_state_changed, state)
