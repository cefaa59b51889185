"""Tracks which EventSub subscriptions are bound to which transport."""

from __future__ import annotations

import logging
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Set

from twitchhelix.models import ShardStatus
from twitchhelix.models import Subscription
from twitchhelix.models import SubscriptionStatus
from twitchhelix.utils import utc_now

logger = logging.getLogger(__name__)

RevocationListener = Callable[[Subscription, SubscriptionStatus], Any]
DetachListener = Callable[[str, ShardStatus, List[Subscription]], Any]


class SubscriptionRegistry:
    """Subscription to transport bindings.

    A transport reference is a WebSocket session id, a webhook callback URL or
    a conduit id. Bindings survive a reconnect handoff through
    :meth:`rebind_all`; after a real transport failure they are detached and
    the application decides whether to subscribe again.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Subscription] = {}
        self._bindings: Dict[str, str] = {}
        self._by_transport: Dict[str, Set[str]] = {}
        self._revoked: Dict[str, Subscription] = {}
        self._revocation_listeners: List[RevocationListener] = []
        self._detach_listeners: List[DetachListener] = []

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, subscription_id: object) -> bool:
        return subscription_id in self._subscriptions

    def add_revocation_listener(self, listener: RevocationListener) -> None:
        """Call ``listener(subscription, status)`` whenever a subscription is revoked."""
        self._revocation_listeners.append(listener)

    def add_detach_listener(self, listener: DetachListener) -> None:
        """Call ``listener(ref, status, subscriptions)`` when a transport fails."""
        self._detach_listeners.append(listener)

    def bind(self, subscription: Subscription, transport_ref: Optional[str] = None) -> None:
        """Bind a subscription to a transport.

        Args:
            subscription: Subscription to track
            transport_ref: Transport reference, defaults to the subscription's own
        """
        ref = transport_ref or subscription.transport.ref
        if ref is None:
            raise ValueError(f"Subscription {subscription.id} has no transport reference")

        self._unlink(subscription.id)
        self._revoked.pop(subscription.id, None)
        self._subscriptions[subscription.id] = subscription
        self._bindings[subscription.id] = ref
        self._by_transport.setdefault(ref, set()).add(subscription.id)
        logger.debug(f"Bound subscription {subscription.id} ({subscription.type}) to {ref}")

    def unbind(self, subscription_id: str) -> Optional[Subscription]:
        """Stop tracking a subscription and forget any revoked record of it.

        Returns:
            The subscription, or None if it was not tracked
        """
        self._unlink(subscription_id)
        revoked = self._revoked.pop(subscription_id, None)
        return self._subscriptions.pop(subscription_id, None) or revoked

    def get(self, subscription_id: str) -> Optional[Subscription]:
        """Tracked subscription, or the last revoked record for the id."""
        return self._subscriptions.get(subscription_id) or self._revoked.get(subscription_id)

    def revoked(self) -> List[Subscription]:
        """Revoked subscriptions, no longer bound to any transport."""
        return list(self._revoked.values())

    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    def transport_of(self, subscription_id: str) -> Optional[str]:
        return self._bindings.get(subscription_id)

    def bound_to(self, transport_ref: str) -> List[Subscription]:
        """Subscriptions currently bound to a transport."""
        ids = self._by_transport.get(transport_ref, set())
        return [self._subscriptions[i] for i in ids if i in self._subscriptions]

    def on_revoked(
        self,
        subscription_id: str,
        status: SubscriptionStatus,
        subscription: Optional[Subscription] = None,
    ) -> Optional[Subscription]:
        """Mark a subscription revoked, unbind it and notify listeners.

        The revoked copy stays queryable through :meth:`get` and
        :meth:`revoked` until the id is bound again or unbound.

        Args:
            subscription_id: Revoked subscription id
            status: Revocation reason reported by the platform
            subscription: Subscription payload from the revocation notice, used
                when the id is not tracked

        Returns:
            The revoked subscription, or None if nothing is known about it
        """
        known = self._subscriptions.get(subscription_id) or subscription
        if known is None:
            logger.warning(f"Revocation for unknown subscription {subscription_id}: {status.value}")
            return None

        revoked = known.model_copy(update={"status": status, "revoked_at": utc_now()})
        self.unbind(subscription_id)
        self._revoked[subscription_id] = revoked
        logger.warning(f"Subscription {subscription_id} ({revoked.type}) revoked: {status.value}")

        for listener in list(self._revocation_listeners):
            self._notify(listener, revoked, status)
        return revoked

    def rebind_all(self, old_ref: str, new_ref: str) -> int:
        """Move every binding from one transport to another.

        Used when the platform hands a WebSocket session over to a new
        connection; the subscriptions themselves are unchanged server side.

        Returns:
            Number of subscriptions moved
        """
        ids = self._by_transport.pop(old_ref, set())
        if not ids:
            return 0

        target = self._by_transport.setdefault(new_ref, set())
        for subscription_id in ids:
            self._bindings[subscription_id] = new_ref
            target.add(subscription_id)
            subscription = self._subscriptions[subscription_id]
            if subscription.transport.session_id == old_ref:
                transport = subscription.transport.model_copy(update={"session_id": new_ref})
                self._subscriptions[subscription_id] = subscription.model_copy(
                    update={"transport": transport}
                )

        logger.info(f"Moved {len(ids)} subscription(s) from {old_ref} to {new_ref}")
        return len(ids)

    def detach_transport(self, transport_ref: str, status: ShardStatus) -> List[Subscription]:
        """Drop every binding of a failed transport.

        The platform disables subscriptions of a failed transport, so they are
        returned with the matching status for the application to recreate.

        Args:
            transport_ref: Failed transport
            status: Why the transport failed

        Returns:
            Detached subscriptions
        """
        ids = self._by_transport.pop(transport_ref, set())
        subscription_status = SubscriptionStatus.from_shard_status(status)
        detached = []
        for subscription_id in ids:
            self._bindings.pop(subscription_id, None)
            subscription = self._subscriptions.pop(subscription_id, None)
            if subscription is not None:
                detached.append(subscription.model_copy(update={"status": subscription_status}))

        if detached:
            logger.warning(
                f"Transport {transport_ref} failed ({status.value}), "
                f"detached {len(detached)} subscription(s)"
            )
            for listener in list(self._detach_listeners):
                self._notify(listener, transport_ref, status, detached)
        return detached

    def _unlink(self, subscription_id: str) -> None:
        ref = self._bindings.pop(subscription_id, None)
        if ref is None:
            return
        ids = self._by_transport.get(ref)
        if ids is not None:
            ids.discard(subscription_id)
            if not ids:
                del self._by_transport[ref]

    @staticmethod
    def _notify(listener: Callable[..., Any], *args: Any) -> None:
        try:
            listener(*args)
        except Exception as e:
            logger.error(f"Subscription listener raised: {e}", exc_info=True)
