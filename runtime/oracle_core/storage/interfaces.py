"""DB-agnostic storage interfaces.

The coordinator is stateless except for store-backed state. These interfaces
define the persistence boundary for:
- Subscriptions, their consumer sets and consumer nonces
- Job requests and their lifecycle updates
- The offchain computer authorization set
- Job events (append-only audit log, also the source for event redelivery)

Stores do not enforce protocol rules. Ownership checks, nonce monotonicity and
exactly-once fulfillment live in the registry and ledger, which call stores
under the coordinator's writer lock.

Concrete drivers live in `storage/` (memory for tests, SQLite for durable runs).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable


@dataclass(frozen=True)
class SubscriptionRecord:
    subscription_id: int
    owner: str
    created_at: datetime
    consumers: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class JobRecord:
    request_id: str
    consumer: str
    subscription_id: int
    nonce: int
    state: str
    created_at: datetime
    updated_at: datetime
    signer: str | None = None
    result: str | None = None
    expiry_reason: str | None = None


@dataclass(frozen=True)
class ComputerRecord:
    address: str
    authorized: bool
    updated_at: datetime


@dataclass(frozen=True)
class EventRecord:
    seq: int
    ts: datetime
    event_type: str
    request_id: str | None
    details: dict[str, Any]


class SubscriptionStore(ABC):
    @abstractmethod
    def next_id(self) -> int:
        """Return the id the next created subscription will get (ids start at 0)."""

    @abstractmethod
    def create(self, subscription: SubscriptionRecord) -> None:
        """Insert a new subscription. Must fail if the id already exists."""

    @abstractmethod
    def get(self, subscription_id: int) -> SubscriptionRecord:
        """Fetch a subscription by id. Must raise NotFoundError if absent."""

    @abstractmethod
    def list(self) -> Iterable[SubscriptionRecord]:
        """List subscriptions ordered by id."""

    @abstractmethod
    def set_consumer(self, subscription_id: int, consumer: str, *, member: bool) -> None:
        """Add (member=True) or remove (member=False) a consumer from the subscription's set."""

    @abstractmethod
    def get_nonce(self, consumer: str, subscription_id: int) -> int | None:
        """Return the stored nonce, or None when the pair was never registered."""

    @abstractmethod
    def set_nonce(self, consumer: str, subscription_id: int, nonce: int) -> None:
        """Store the nonce for a (consumer, subscription) pair."""


class JobStore(ABC):
    @abstractmethod
    def create(self, job: JobRecord) -> None:
        """Insert a new job request. Must fail with ConflictError if request_id already exists."""

    @abstractmethod
    def get(self, request_id: str) -> JobRecord:
        """Fetch a job by request id. Must raise UnknownRequestError if absent."""

    @abstractmethod
    def update(self, job: JobRecord) -> None:
        """Replace the stored job (request_id is the key)."""

    @abstractmethod
    def list_by_state(self, state: str) -> Iterable[JobRecord]:
        """List jobs in a given state ordered by creation time."""


class AuthorityStore(ABC):
    @abstractmethod
    def get(self, address: str) -> ComputerRecord | None:
        """Fetch the authorization record for an address, or None."""

    @abstractmethod
    def put(self, record: ComputerRecord) -> None:
        """Insert or replace the authorization record for an address."""

    @abstractmethod
    def list_authorized(self) -> Iterable[str]:
        """List currently authorized addresses."""


class EventStore(ABC):
    @abstractmethod
    def append(self, *, event_type: str, request_id: str | None, details: dict[str, Any] | None = None) -> EventRecord:
        """Append an event (append-only) and return it with its sequence number."""

    @abstractmethod
    def list_since(self, seq: int) -> Iterable[EventRecord]:
        """List events with a sequence number greater than `seq`, in order."""

    @abstractmethod
    def latest_seq(self) -> int:
        """Sequence number of the newest event (0 when the log is empty)."""

    @abstractmethod
    def list_for_request(self, request_id: str) -> Iterable[EventRecord]:
        """List events recorded for a job request, in order."""
