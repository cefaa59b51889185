"""Twitch Helix SDK - Main client implementation.

Async client for the Helix REST API with:
- Credential storage with proactive and reactive token refresh
- Adaptive rate limiting driven by the server's rate limit headers
- Typed responses using Pydantic
- Exponential backoff with jitter for transient failures
"""

from __future__ import annotations

import logging
from typing import Any
from typing import AsyncIterator
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Type
from typing import TypeVar
from typing import Union

import httpx

from .codec import decode
from .config import HelixConfig
from .credentials import CredentialStore
from .credentials import OAuth2TokenRefresher
from .credentials import TokenRefresher
from .executor import Call
from .executor import RequestExecutor
from .models import Credential
from .models import CredentialKind
from .models import CreateSubscriptionRequest
from .models import HelixResponse
from .models import Subscription
from .models import SubscriptionList
from .models import SubscriptionStatus
from .models import TransportBinding
from .models import TransportMethod
from .models import User
from .ratelimit import RateLimiter
from .subscriptions import SubscriptionCatalog
from .subscriptions import SubscriptionType
from .subscriptions import default_catalog

logger = logging.getLogger(__name__)

M = TypeVar("M")


class HelixClient:
    """Main Helix API client.

    Example:
        ```python
        from twitchhelix import HelixClient, HelixConfig

        config = HelixConfig(client_id="abc", client_secret="xyz")
        async with HelixClient(config) as helix:
            users = await helix.get_users(logins=["twitchdev"])
        ```
    """

    def __init__(
        self,
        config: Optional[HelixConfig] = None,
        credentials: Optional[Iterable[Credential]] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        refresher: Optional[TokenRefresher] = None,
        rate_limiter: Optional[RateLimiter] = None,
        catalog: Optional[SubscriptionCatalog] = None,
    ) -> None:
        """Initialize Helix client.

        Args:
            config: Client configuration, defaults to production settings
            credentials: Initial credentials
            http_client: HTTP client to use instead of building one from the config
            refresher: Token refresher, defaults to the OAuth2 endpoint when a
                client id is configured
            rate_limiter: Shared rate limiter, defaults to one seeded from the config
            catalog: Subscription-type catalog
        """
        self.config = config or HelixConfig()
        self.catalog = catalog or default_catalog()

        self._owns_http = http_client is None
        self._http = http_client or self._build_http_client(self.config)

        if refresher is None and self.config.client_id:
            refresher = OAuth2TokenRefresher(
                self._http,
                self.config.token_url,
                self.config.client_id,
                self.config.client_secret,
            )

        self.credentials = CredentialStore(refresher, refresh_lead_time=self.config.refresh_lead_time)
        for credential in credentials or ():
            self.credentials.add(credential)

        self.rate_limiter = rate_limiter or RateLimiter(
            capacity=self.config.rate_limit.capacity,
            window=self.config.rate_limit.window,
        )

        self._executor = RequestExecutor(
            self._http,
            self.credentials,
            self.rate_limiter,
            retry=self.config.retry,
            timeout=self.config.timeout,
            request_queue_size=self.config.request_queue_size,
        )

    @staticmethod
    def _build_http_client(config: HelixConfig) -> httpx.AsyncClient:
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=config.max_connections,
            keepalive_expiry=30.0,
        )
        return httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout),
            limits=limits,
            headers={"User-Agent": config.user_agent},
            proxy=config.proxy,
            follow_redirects=True,
        )

    async def __aenter__(self) -> HelixClient:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Any] = None,
        json: Optional[Any] = None,
        response_model: Optional[Type[M]] = None,
        credential_kind: CredentialKind = CredentialKind.ANY,
        user_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Union[M, Any, None]:
        """Call a Helix endpoint.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            params: Query parameters
            json: JSON body
            response_model: Type to decode the body into, raw JSON when None
            credential_kind: Kind of token the endpoint requires
            user_id: Use this user's token
            timeout: Overall deadline in seconds

        Returns:
            Decoded body, or None for empty responses

        Raises:
            TwitchHelixError: One of the typed SDK errors
        """
        call = Call(
            method=method,
            path=path,
            params=params,
            json=json,
            credential_kind=credential_kind,
            user_id=user_id,
        )
        response = await self._executor.execute(call, timeout=timeout)

        if response.status_code == 204 or not response.content:
            return None
        return decode(response.content, response_model or Any)

    # Users

    async def get_users(
        self,
        ids: Optional[List[str]] = None,
        logins: Optional[List[str]] = None,
        user_id: Optional[str] = None,
    ) -> List[User]:
        """Get users by id and/or login; the token's own user when both are empty.

        Args:
            ids: User ids (up to 100 combined with logins)
            logins: User logins
            user_id: Use this user's token

        Returns:
            Matching users
        """
        params = [("id", i) for i in ids or ()] + [("login", name) for name in logins or ()]
        response = await self.request(
            "GET",
            "/users",
            params=params,
            response_model=HelixResponse[User],
            user_id=user_id,
        )
        return response.data if response else []

    # EventSub

    async def create_eventsub_subscription(
        self,
        subscription_type: Union[SubscriptionType, str],
        condition: Dict[str, Any],
        transport: TransportBinding,
        version: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Subscription:
        """Create an EventSub subscription.

        WebSocket subscriptions need a user token; webhook and conduit
        subscriptions need an app token.

        Args:
            subscription_type: Catalog entry or type name
            condition: Condition fields
            transport: Delivery transport
            version: Type version, required when passing a type name
            user_id: Use this user's token

        Returns:
            Created subscription
        """
        if isinstance(subscription_type, SubscriptionType):
            name, version = subscription_type.name, subscription_type.version
            condition = subscription_type.build_condition(**condition)
        else:
            name = subscription_type
            if version is None:
                raise ValueError("version is required when passing a subscription type name")

        body = CreateSubscriptionRequest(
            type=name, version=version, condition=condition, transport=transport
        ).to_body()

        kind = CredentialKind.USER if transport.method == TransportMethod.WEBSOCKET else CredentialKind.APP
        response = await self.request(
            "POST",
            "/eventsub/subscriptions",
            json=body,
            response_model=SubscriptionList,
            credential_kind=kind,
            user_id=user_id,
        )
        if not response or not response.data:
            raise ValueError("Create subscription response contained no subscription")

        subscription = response.data[0]
        logger.info(f"Created {subscription.type} v{subscription.version} subscription {subscription.id}")
        return subscription

    async def subscribe_websocket(
        self,
        subscription_type: Union[SubscriptionType, str],
        condition: Dict[str, Any],
        session_id: str,
        version: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Subscription:
        """Create a subscription delivered to a welcomed WebSocket session.

        Args:
            subscription_type: Catalog entry or type name
            condition: Condition fields
            session_id: Session id from the welcome message
            version: Type version, required when passing a type name
            user_id: Use this user's token

        Returns:
            Created subscription
        """
        return await self.create_eventsub_subscription(
            subscription_type,
            condition,
            TransportBinding.websocket(session_id),
            version=version,
            user_id=user_id,
        )

    async def get_eventsub_subscriptions(
        self,
        status: Optional[SubscriptionStatus] = None,
        subscription_type: Optional[str] = None,
        user_id: Optional[str] = None,
        after: Optional[str] = None,
        credential_kind: CredentialKind = CredentialKind.APP,
    ) -> SubscriptionList:
        """Get one page of EventSub subscriptions.

        Args:
            status: Filter by status
            subscription_type: Filter by type name
            user_id: Filter by user id in the condition
            after: Pagination cursor
            credential_kind: APP for webhook/conduit subscriptions, USER for WebSocket ones

        Returns:
            Page of subscriptions with cost totals
        """
        params: Dict[str, str] = {}
        if status is not None:
            params["status"] = status.value
        if subscription_type:
            params["type"] = subscription_type
        if user_id:
            params["user_id"] = user_id
        if after:
            params["after"] = after

        response = await self.request(
            "GET",
            "/eventsub/subscriptions",
            params=params,
            response_model=SubscriptionList,
            credential_kind=credential_kind,
        )
        return response or SubscriptionList()

    async def iter_eventsub_subscriptions(self, **filters: Any) -> AsyncIterator[Subscription]:
        """Iterate over every page of EventSub subscriptions."""
        after: Optional[str] = None
        while True:
            page = await self.get_eventsub_subscriptions(after=after, **filters)
            for subscription in page.data:
                yield subscription
            after = page.pagination.cursor if page.pagination else None
            if not after:
                return

    async def delete_eventsub_subscription(
        self,
        subscription_id: str,
        credential_kind: CredentialKind = CredentialKind.APP,
        user_id: Optional[str] = None,
    ) -> None:
        """Delete an EventSub subscription."""
        await self.request(
            "DELETE",
            "/eventsub/subscriptions",
            params={"id": subscription_id},
            credential_kind=credential_kind,
            user_id=user_id,
        )
        logger.info(f"Deleted subscription {subscription_id}")
