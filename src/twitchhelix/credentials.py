"""Credential storage and OAuth2 token refresh for Helix calls."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC
from abc import abstractmethod
from datetime import datetime
from datetime import timedelta
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Set
from typing import Tuple

import backoff
import httpx

from twitchhelix.codec import decode
from twitchhelix.errors import DecodeError
from twitchhelix.errors import NoCredentialError
from twitchhelix.errors import RefreshError
from twitchhelix.models import Credential
from twitchhelix.models import CredentialKind
from twitchhelix.models import TokenResponse
from twitchhelix.utils import utc_now

logger = logging.getLogger(__name__)

CredentialKey = Tuple[str, Optional[str]]


class TokenRefresher(ABC):
    """Exchanges credentials for fresh tokens."""

    @abstractmethod
    async def refresh(self, credential: Credential) -> Credential:
        """Obtain a new token for the credential's identity.

        Args:
            credential: Credential to renew

        Returns:
            Renewed credential with the same identity

        Raises:
            RefreshError: Network or protocol failure
        """

    def can_refresh(self, credential: Credential) -> bool:
        """Whether :meth:`refresh` has anything to work with."""
        return credential.refresh_token is not None

    @property
    def app_client_id(self) -> Optional[str]:
        """Client id for which app tokens can be issued, if any."""
        return None

    async def issue_app_token(self) -> Credential:
        """Obtain a new app access token.

        Raises:
            RefreshError: App tokens are not available
        """
        raise RefreshError("App token issuance is not configured")


class OAuth2TokenRefresher(TokenRefresher):
    """Refresher backed by the standard OAuth2 token endpoint.

    User tokens are renewed with the ``refresh_token`` grant; app tokens have
    no refresh token and are reissued with the ``client_credentials`` grant.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        client_secret: Optional[str] = None,
    ) -> None:
        """Initialize OAuth2 refresher.

        Args:
            client: HTTP client used for token requests
            token_url: Absolute URL of the token endpoint
            client_id: Application client id
            client_secret: Application client secret
        """
        self._client = client
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret

    @property
    def app_client_id(self) -> Optional[str]:
        return self._client_id if self._client_secret else None

    def can_refresh(self, credential: Credential) -> bool:
        if credential.client_id != self._client_id or not self._client_secret:
            return False
        return credential.refresh_token is not None or credential.kind == CredentialKind.APP

    async def refresh(self, credential: Credential) -> Credential:
        if not self.can_refresh(credential):
            raise RefreshError(f"Cannot refresh credential for {credential.key}")

        if credential.refresh_token:
            form = {
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
            }
        else:
            form = {"grant_type": "client_credentials"}

        token = await self._exchange(form)
        return self._to_credential(token, credential)

    async def issue_app_token(self) -> Credential:
        if not self._client_secret:
            raise RefreshError("App token issuance requires a client secret")
        token = await self._exchange({"grant_type": "client_credentials"})
        return self._to_credential(token, None)

    async def _exchange(self, form: Dict[str, str]) -> TokenResponse:
        form = {**form, "client_id": self._client_id, "client_secret": self._client_secret or ""}

        try:
            response = await self._post(form)
        except httpx.HTTPError as e:
            raise RefreshError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise RefreshError(
                f"Token endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
                details={"body": response.text[:200]},
            )

        try:
            return decode(response.content, TokenResponse)
        except DecodeError as e:
            raise RefreshError("Malformed token response", status_code=200) from e

    @backoff.on_exception(
        backoff.expo,
        (httpx.TimeoutException, httpx.ConnectError),
        max_tries=3,
        jitter=backoff.full_jitter,
        logger=logger,
    )
    async def _post(self, form: Dict[str, str]) -> httpx.Response:
        return await self._client.post(self._token_url, data=form)

    def _to_credential(self, token: TokenResponse, previous: Optional[Credential]) -> Credential:
        expires_at = None
        if token.expires_in is not None:
            expires_at = utc_now() + timedelta(seconds=token.expires_in)

        scopes = tuple(token.scope) or (previous.scopes if previous else ())
        return Credential(
            client_id=self._client_id,
            user_id=previous.user_id if previous else None,
            login=previous.login if previous else None,
            scopes=scopes,
            access_token=token.access_token,
            refresh_token=token.refresh_token or (previous.refresh_token if previous else None),
            expires_at=expires_at,
        )


class CredentialStore:
    """Holds bearer credentials and keeps them fresh.

    One credential is stored per ``(client_id, user_id)`` identity. Refresh is
    single-flight per identity: concurrent callers share the refresh that is
    already running instead of starting their own.
    """

    def __init__(
        self,
        refresher: Optional[TokenRefresher] = None,
        refresh_lead_time: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize credential store.

        Args:
            refresher: Token refresher, None disables refresh
            refresh_lead_time: Refresh proactively this many seconds before expiry
            clock: Source of the current UTC time
        """
        self._refresher = refresher
        self._lead_time = refresh_lead_time
        self._clock = clock
        self._credentials: Dict[CredentialKey, Credential] = {}
        self._invalid: Set[CredentialKey] = set()
        self._inflight: Dict[CredentialKey, asyncio.Future[Credential]] = {}

    def add(self, credential: Credential) -> None:
        """Store a credential, replacing any with the same identity."""
        self._credentials[credential.key] = credential
        self._invalid.discard(credential.key)
        logger.debug(f"Stored {credential.kind.value} credential for {credential.key}")

    def remove(self, credential: Credential) -> None:
        self._credentials.pop(credential.key, None)
        self._invalid.discard(credential.key)

    def get(self, client_id: str, user_id: Optional[str] = None) -> Optional[Credential]:
        return self._credentials.get((client_id, user_id))

    def credentials(self) -> List[Credential]:
        return list(self._credentials.values())

    def is_valid(self, credential: Credential) -> bool:
        """Whether the stored credential is neither marked invalid nor expired."""
        if credential.key in self._invalid:
            return False
        return not credential.is_expired(self._clock())

    def mark_invalid(self, credential: Credential) -> None:
        """Flag a credential so :meth:`resolve` skips it until refreshed.

        A credential whose token was already replaced by a refresh is left alone.
        """
        current = self._credentials.get(credential.key)
        if current is None or current.access_token != credential.access_token:
            return
        self._invalid.add(credential.key)
        logger.warning(f"Marked {credential.kind.value} credential for {credential.key} invalid")

    def _can_refresh(self, credential: Credential) -> bool:
        return self._refresher is not None and self._refresher.can_refresh(credential)

    def _candidates(self, kind: CredentialKind, user_id: Optional[str]) -> List[Credential]:
        candidates = []
        for credential in self._credentials.values():
            if user_id is not None and credential.user_id != user_id:
                continue
            if kind != CredentialKind.ANY and credential.kind != kind:
                continue
            candidates.append(credential)
        return candidates

    async def resolve(
        self,
        kind: CredentialKind = CredentialKind.ANY,
        user_id: Optional[str] = None,
    ) -> Credential:
        """Pick the credential to attach to a call.

        Credentials inside the refresh lead window are refreshed first. If that
        refresh fails, a credential that has not yet expired is still used.

        Args:
            kind: Required credential kind
            user_id: Restrict to the credential of this user

        Returns:
            Credential to use

        Raises:
            NoCredentialError: Nothing matches
            RefreshError: The only matching credentials are expired or invalid
                and could not be refreshed
        """
        last_error: Optional[RefreshError] = None
        now = self._clock()

        for credential in self._candidates(kind, user_id):
            invalid = credential.key in self._invalid
            stale = invalid or credential.expires_within(self._lead_time, now)

            if not stale:
                return credential

            if self._can_refresh(credential):
                try:
                    return await self.refresh(credential)
                except RefreshError as e:
                    last_error = e
                    if not invalid and not credential.is_expired(self._clock()):
                        logger.warning(f"Refresh failed, using current token until it expires: {e}")
                        return credential
                    continue

            if not invalid and not credential.is_expired(now):
                return credential

        if (
            user_id is None
            and kind in (CredentialKind.APP, CredentialKind.ANY)
            and self._refresher is not None
            and self._refresher.app_client_id is not None
            and self.get(self._refresher.app_client_id) is None
        ):
            return await self._single_flight(
                (self._refresher.app_client_id, None), self._issue_app_token
            )

        if last_error is not None:
            raise last_error
        raise NoCredentialError(f"No valid {kind.value} credential available", kind=kind.value)

    async def refresh(self, credential: Credential) -> Credential:
        """Exchange the credential for a fresh token.

        Args:
            credential: Credential to renew

        Returns:
            Renewed credential (possibly renewed by a concurrent caller)

        Raises:
            RefreshError: Refresh is unavailable or failed
        """
        key = credential.key
        current = self._credentials.get(key)
        if (
            current is not None
            and current.access_token != credential.access_token
            and key not in self._invalid
        ):
            return current

        if self._refresher is None:
            raise RefreshError("No token refresher configured")

        return await self._single_flight(key, lambda: self._refresh(credential))

    async def _single_flight(
        self,
        key: CredentialKey,
        operation: Callable[[], Awaitable[Credential]],
    ) -> Credential:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(operation())
            self._inflight[key] = task

            def _done(finished: asyncio.Future[Credential], key: CredentialKey = key) -> None:
                if self._inflight.get(key) is finished:
                    del self._inflight[key]
                if not finished.cancelled():
                    # Retrieve so an unawaited failure is not reported as never retrieved
                    finished.exception()

            task.add_done_callback(_done)

        # Shielded so one cancelled waiter does not abort the refresh for the rest
        return await asyncio.shield(task)

    async def _refresh(self, credential: Credential) -> Credential:
        assert self._refresher is not None
        logger.info(f"Refreshing {credential.kind.value} credential for {credential.key}")
        renewed = await self._refresher.refresh(credential)
        self.add(renewed)
        return renewed

    async def _issue_app_token(self) -> Credential:
        assert self._refresher is not None
        logger.info("Issuing app access token")
        issued = await self._refresher.issue_app_token()
        self.add(issued)
        return issued
