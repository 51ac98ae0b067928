"""Subscription registry: owners, consumer sets and consumer nonces.

Rules:
- Subscription ids are allocated from a counter starting at 0 and never reused.
- The owner is fixed at creation.
- A consumer's nonce is set to 1 the first time it is added to a subscription
  and grows by exactly 1 per job request. It never decreases: removing and
  re-adding a consumer keeps the stored value.
- Nonces are uint256; an increment past the maximum fails and changes nothing.

All mutations run under the writer lock shared with the rest of the
coordinator state, so nonce increments are totally ordered.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from oracle_core.crypto.codec import UINT256_MAX
from oracle_core.errors import NonceOverflowError, NotAConsumerError, UnauthorizedError
from oracle_core.storage.interfaces import SubscriptionRecord, SubscriptionStore
from oracle_core.utils import normalize_address, utcnow

logger = logging.getLogger(__name__)

INITIAL_NONCE = 1


@dataclass(frozen=True)
class Subscription:
    subscription_id: int
    owner: str
    consumers: frozenset[str]

    @classmethod
    def from_record(cls, rec: SubscriptionRecord) -> "Subscription":
        return cls(subscription_id=rec.subscription_id, owner=rec.owner, consumers=rec.consumers)


class SubscriptionRegistry:
    def __init__(self, *, store: SubscriptionStore, lock: threading.RLock | None = None):
        self._store = store
        self._lock = lock or threading.RLock()

    def create_subscription(self, caller: str) -> int:
        owner = normalize_address(caller)
        with self._lock:
            subscription_id = self._store.next_id()
            self._store.create(SubscriptionRecord(subscription_id=subscription_id, owner=owner, created_at=utcnow()))
        logger.info(
            "subscription_created",
            extra={"event": "subscription_created", "subscription_id": subscription_id, "owner": owner},
        )
        return subscription_id

    def get_subscription(self, subscription_id: int) -> Subscription:
        return Subscription.from_record(self._store.get(subscription_id))

    def list_subscriptions(self) -> list[Subscription]:
        return [Subscription.from_record(r) for r in self._store.list()]

    def consumer_nonce(self, consumer: str, subscription_id: int) -> int:
        """Current nonce for the pair; 0 when the consumer was never added."""
        return self._store.get_nonce(normalize_address(consumer), subscription_id) or 0

    def add_consumer(self, subscription_id: int, consumer: str, caller: str) -> None:
        consumer = normalize_address(consumer)
        caller = normalize_address(caller)
        with self._lock:
            sub = self._store.get(subscription_id)
            if sub.owner != caller:
                raise UnauthorizedError(
                    f"Only the subscription owner may add consumers (subscription_id={subscription_id})",
                    details={"caller": caller},
                )
            self._store.set_consumer(subscription_id, consumer, member=True)
            if self._store.get_nonce(consumer, subscription_id) is None:
                self._store.set_nonce(consumer, subscription_id, INITIAL_NONCE)
        logger.info(
            "consumer_added",
            extra={"event": "consumer_added", "subscription_id": subscription_id, "consumer": consumer},
        )

    def remove_consumer(self, subscription_id: int, consumer: str, caller: str) -> None:
        consumer = normalize_address(consumer)
        caller = normalize_address(caller)
        with self._lock:
            sub = self._store.get(subscription_id)
            if sub.owner != caller:
                raise UnauthorizedError(
                    f"Only the subscription owner may remove consumers (subscription_id={subscription_id})",
                    details={"caller": caller},
                )
            if consumer not in sub.consumers:
                return
            # The nonce row stays so a re-add continues from the current value.
            self._store.set_consumer(subscription_id, consumer, member=False)
        logger.info(
            "consumer_removed",
            extra={"event": "consumer_removed", "subscription_id": subscription_id, "consumer": consumer},
        )

    def record_request(self, subscription_id: int, consumer: str) -> int:
        consumer = normalize_address(consumer)
        with self._lock:
            sub = self._store.get(subscription_id)
            if consumer not in sub.consumers:
                raise NotAConsumerError(
                    f"{consumer} is not a consumer of subscription {subscription_id}",
                    details={"consumer": consumer, "subscription_id": subscription_id},
                )
            current = self._store.get_nonce(consumer, subscription_id) or 0
            if current >= UINT256_MAX:
                raise NonceOverflowError(f"Nonce overflow for {consumer} on subscription {subscription_id}")
            nonce = current + 1
            self._store.set_nonce(consumer, subscription_id, nonce)
        return nonce
