"""Coordinator host: the contract-side surface of the randomness protocol.

This host:
- Owns the coordinator owner identity (explicit state, injected at construction)
- Serializes every mutating call behind one reentrant writer lock, the way a
  chain executes one transaction at a time
- Runs each call inside a store transaction so a failed call leaves no
  partial writes behind
- Composes the subscription registry, the offchain computer authority and the
  request ledger over a set of stores
- Exposes the calls a consumer, an admin and an oracle make

The lock is reentrant so a consumer callback running inside a fulfillment may
call back into the coordinator (for example to request its next job).
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import ContextManager, Iterator, Protocol

from oracle_core.chain.consumer import ConsumerDirectory
from oracle_core.errors import UnauthorizedError
from oracle_core.ledger.events import EventBus
from oracle_core.ledger.ledger import RequestLedger
from oracle_core.registry.authority import OffchainComputerAuthority
from oracle_core.registry.subscriptions import Subscription, SubscriptionRegistry
from oracle_core.storage.interfaces import AuthorityStore, EventStore, JobRecord, JobStore, SubscriptionStore
from oracle_core.utils import from_hex, normalize_address

logger = logging.getLogger(__name__)


class Stores(Protocol):
    subscriptions: SubscriptionStore
    jobs: JobStore
    authority: AuthorityStore
    events: EventStore

    def transaction(self) -> ContextManager[object]:
        """Apply every store write inside the block, or none of them."""


@dataclass(frozen=True)
class CoordinatorSettings:
    owner: str
    # When False only the owner may create subscriptions.
    open_subscriptions: bool = False


class Coordinator:
    def __init__(self, *, settings: CoordinatorSettings, stores: Stores, consumers: ConsumerDirectory | None = None):
        self._lock = threading.RLock()
        self._stores = stores
        self.owner = normalize_address(settings.owner)
        self._open_subscriptions = settings.open_subscriptions
        self.consumers = consumers or ConsumerDirectory()
        self.events = EventBus(stores.events)
        self.subscriptions = SubscriptionRegistry(store=stores.subscriptions, lock=self._lock)
        self.authority = OffchainComputerAuthority(owner=self.owner, store=stores.authority, lock=self._lock)
        self.ledger = RequestLedger(
            job_store=stores.jobs,
            authority=self.authority,
            events=self.events,
            deliver=self.consumers.deliver,
            transaction=self.transaction,
        )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the writer lock and a store transaction across several calls.

        The calls inside apply as one unit: if the block raises, every store
        write made in it is rolled back. Nested use joins the outer unit.
        """
        with self._lock, self._stores.transaction():
            yield

    def _require_owner(self, caller: str, action: str) -> None:
        if normalize_address(caller) != self.owner:
            raise UnauthorizedError(f"Only the coordinator owner may {action}", details={"caller": caller})

    # Admin calls

    def create_subscription(self, caller: str) -> int:
        if not self._open_subscriptions:
            self._require_owner(caller, "create subscriptions")
        with self.transaction():
            return self.subscriptions.create_subscription(caller)

    def add_consumer(self, subscription_id: int, consumer: str, caller: str) -> None:
        with self.transaction():
            self.subscriptions.add_consumer(subscription_id, consumer, caller)

    def remove_consumer(self, subscription_id: int, consumer: str, caller: str) -> None:
        with self.transaction():
            self.subscriptions.remove_consumer(subscription_id, consumer, caller)

    def update_offchain_computer(self, address: str, authorized: bool, caller: str) -> bool:
        with self.transaction():
            return self.authority.set_authorized(address, authorized, caller)

    def expire_job(self, request_id: str, caller: str, reason: str = "expired_by_owner") -> JobRecord:
        self._require_owner(caller, "expire jobs")
        with self.transaction():
            return self.ledger.expire(request_id, reason)

    # Consumer and oracle calls

    def request_job(self, consumer: str, subscription_id: int) -> str:
        # The nonce bump, the job and its event commit together or not at all.
        with self.transaction():
            nonce = self.subscriptions.record_request(subscription_id, consumer)
            return self.ledger.create_job(consumer, subscription_id, nonce)

    def fulfill_job_for_random(self, request_id: str, encoded_result: bytes | str, signature: bytes | str) -> JobRecord:
        result = from_hex(encoded_result, field="encoded_result")
        sig = from_hex(signature, field="signature")
        with self.transaction():
            return self.ledger.fulfill(request_id, result, sig)

    # Views

    def sub_id_to_subscription(self, subscription_id: int) -> Subscription:
        return self.subscriptions.get_subscription(subscription_id)

    def consumer_nonce(self, consumer: str, subscription_id: int) -> int:
        return self.subscriptions.consumer_nonce(consumer, subscription_id)

    def get_job(self, request_id: str) -> JobRecord:
        return self.ledger.get_job(request_id)
