"""In-memory storage driver.

Used by tests and by short-lived runs (`storage.driver: memory`). Each store
guards its own dicts with a lock so readers on other threads never observe a
half-applied write; protocol-level serialization is the coordinator's job.
`MemoryStores.transaction()` groups several writes into one unit by
snapshotting the stores and restoring them when the unit fails.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterable, Iterator

from oracle_core.errors import ConflictError, NotFoundError, UnknownRequestError
from oracle_core.storage.interfaces import (
    AuthorityStore,
    ComputerRecord,
    EventRecord,
    EventStore,
    JobRecord,
    JobStore,
    SubscriptionRecord,
    SubscriptionStore,
)
from oracle_core.utils import utcnow


class MemorySubscriptionStore(SubscriptionStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: dict[int, SubscriptionRecord] = {}
        self._nonces: dict[tuple[str, int], int] = {}

    def next_id(self) -> int:
        with self._lock:
            return max(self._subs, default=-1) + 1

    def create(self, subscription: SubscriptionRecord) -> None:
        with self._lock:
            if subscription.subscription_id in self._subs:
                raise ConflictError(f"Subscription already exists: {subscription.subscription_id}")
            self._subs[subscription.subscription_id] = subscription

    def get(self, subscription_id: int) -> SubscriptionRecord:
        with self._lock:
            if subscription_id not in self._subs:
                raise NotFoundError("Subscription", str(subscription_id))
            return self._subs[subscription_id]

    def list(self) -> Iterable[SubscriptionRecord]:
        with self._lock:
            return [self._subs[k] for k in sorted(self._subs)]

    def set_consumer(self, subscription_id: int, consumer: str, *, member: bool) -> None:
        with self._lock:
            if subscription_id not in self._subs:
                raise NotFoundError("Subscription", str(subscription_id))
            sub = self._subs[subscription_id]
            consumers = set(sub.consumers)
            if member:
                consumers.add(consumer)
            else:
                consumers.discard(consumer)
            self._subs[subscription_id] = replace(sub, consumers=frozenset(consumers))

    def get_nonce(self, consumer: str, subscription_id: int) -> int | None:
        with self._lock:
            return self._nonces.get((consumer, subscription_id))

    def set_nonce(self, consumer: str, subscription_id: int, nonce: int) -> None:
        with self._lock:
            self._nonces[(consumer, subscription_id)] = nonce

    def snapshot(self) -> Any:
        with self._lock:
            return dict(self._subs), dict(self._nonces)

    def restore(self, state: Any) -> None:
        with self._lock:
            subs, nonces = state
            self._subs = dict(subs)
            self._nonces = dict(nonces)


class MemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}

    def create(self, job: JobRecord) -> None:
        with self._lock:
            if job.request_id in self._jobs:
                raise ConflictError(f"Job already exists: {job.request_id}")
            self._jobs[job.request_id] = job

    def get(self, request_id: str) -> JobRecord:
        with self._lock:
            if request_id not in self._jobs:
                raise UnknownRequestError(request_id)
            return self._jobs[request_id]

    def update(self, job: JobRecord) -> None:
        with self._lock:
            if job.request_id not in self._jobs:
                raise UnknownRequestError(job.request_id)
            self._jobs[job.request_id] = job

    def list_by_state(self, state: str) -> Iterable[JobRecord]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.state == state]
        return sorted(jobs, key=lambda j: j.created_at)

    def snapshot(self) -> Any:
        with self._lock:
            return dict(self._jobs)

    def restore(self, state: Any) -> None:
        with self._lock:
            self._jobs = dict(state)


class MemoryAuthorityStore(AuthorityStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ComputerRecord] = {}

    def get(self, address: str) -> ComputerRecord | None:
        with self._lock:
            return self._records.get(address)

    def put(self, record: ComputerRecord) -> None:
        with self._lock:
            self._records[record.address] = record

    def list_authorized(self) -> Iterable[str]:
        with self._lock:
            return sorted(a for a, r in self._records.items() if r.authorized)

    def snapshot(self) -> Any:
        with self._lock:
            return dict(self._records)

    def restore(self, state: Any) -> None:
        with self._lock:
            self._records = dict(state)


class MemoryEventStore(EventStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[EventRecord] = []

    def append(self, *, event_type: str, request_id: str | None, details: dict[str, Any] | None = None) -> EventRecord:
        with self._lock:
            event = EventRecord(
                seq=len(self._events) + 1,
                ts=utcnow(),
                event_type=event_type,
                request_id=request_id,
                details=dict(details or {}),
            )
            self._events.append(event)
            return event

    def list_since(self, seq: int) -> Iterable[EventRecord]:
        with self._lock:
            return [e for e in self._events if e.seq > seq]

    def latest_seq(self) -> int:
        with self._lock:
            return len(self._events)

    def list_for_request(self, request_id: str) -> Iterable[EventRecord]:
        with self._lock:
            return [e for e in self._events if e.request_id == request_id]

    def snapshot(self) -> Any:
        with self._lock:
            return list(self._events)

    def restore(self, state: Any) -> None:
        with self._lock:
            self._events = list(state)


class MemoryStores:
    """Convenience container for the four stores kept in process memory."""

    def __init__(self) -> None:
        self.subscriptions = MemorySubscriptionStore()
        self.jobs = MemoryJobStore()
        self.authority = MemoryAuthorityStore()
        self.events = MemoryEventStore()
        self._tx_lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Apply every store write inside the block, or none of them.

        Each level (including nested ones) snapshots the stores on entry and
        restores that snapshot if the block raises.
        """
        stores = (self.subscriptions, self.jobs, self.authority, self.events)
        with self._tx_lock:
            saved = [(store, store.snapshot()) for store in stores]
            try:
                yield
            except BaseException:
                for store, state in saved:
                    store.restore(state)
                raise
