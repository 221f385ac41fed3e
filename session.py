import logging
from typing import List, Optional

from errors import Forbidden
from identity import IdentityGateway
from models.models import AuthEvent, Identity
from mongo import DocumentStore, Subscription
from profiles import fetch_profile


class Session:
    """
    Everything scoped to one signed-in client: the identity, the cached
    `users` profile and the live subscriptions opened on its behalf.

    Closing the session releases every subscription it owns. A session also
    closes itself when its token is signed out.
    """

    def __init__(self, identity: Identity, store: DocumentStore, identity_gateway: IdentityGateway):
        self.identity = identity
        self.store = store
        self.profile: Optional[dict] = None
        self.closed = False
        self._subscriptions: List[Subscription] = []
        self._auth_subscription = identity_gateway.on_auth_change(self._on_auth_change)

    @property
    def uid(self) -> str:
        return self.identity.uid

    @property
    def user_type(self) -> Optional[str]:
        return (self.profile or {}).get("userType")

    @property
    def name(self) -> str:
        return (self.profile or {}).get("name") or self.identity.display_name

    def load_profile(self) -> Optional[dict]:
        self.profile = fetch_profile(self.store, self.uid)
        return self.profile

    def require(self, user_type: str) -> None:
        if self.user_type != user_type:
            raise Forbidden(f"Only a {user_type} can do this")

    def track(self, subscription: Subscription) -> Subscription:
        self._subscriptions.append(subscription)
        return subscription

    @property
    def subscription_count(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self._auth_subscription.unsubscribe()

    def _on_auth_change(self, event: AuthEvent) -> None:
        if event.identity is None and event.token == self.identity.token:
            logging.info(f"Session for {self.uid} signed out, releasing listeners")
            self.close()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
