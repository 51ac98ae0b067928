"""Job events: an append-only log readers follow with a sequence cursor.

The event store is both the audit trail and the delivery channel. Readers
(the oracle scheduler, possibly in another process sharing the SQLite file)
poll `since(cursor)` and advance their cursor. Delivery is at-least-once: a
reader that restarts from an older cursor sees events again, so consumers of
these events must be idempotent per request id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from oracle_core.storage.interfaces import EventRecord, EventStore

JOB_REQUESTED = "job_requested"
JOB_FULFILLED = "job_fulfilled"
JOB_EXPIRED = "job_expired"


@dataclass(frozen=True)
class JobRequested:
    """The oracle's trigger: enough context to compute and submit a fulfillment."""

    request_id: str
    consumer: str
    subscription_id: int
    nonce: int
    seq: int = 0

    @classmethod
    def from_record(cls, event: EventRecord) -> "JobRequested":
        d = event.details
        return cls(
            request_id=str(event.request_id),
            consumer=str(d["consumer"]),
            subscription_id=int(d["subscription_id"]),
            nonce=int(d["nonce"]),
            seq=event.seq,
        )

    def to_details(self) -> dict[str, Any]:
        # nonce is uint256; keep it a string so JSON readers don't lose precision.
        return {"consumer": self.consumer, "subscription_id": self.subscription_id, "nonce": str(self.nonce)}


class EventBus:
    def __init__(self, store: EventStore):
        self._store = store

    def emit(self, event_type: str, request_id: str | None, details: dict[str, Any] | None = None) -> EventRecord:
        return self._store.append(event_type=event_type, request_id=request_id, details=details)

    def since(self, seq: int, event_type: str | None = None) -> list[EventRecord]:
        return [e for e in self._store.list_since(seq) if event_type is None or e.event_type == event_type]

    def latest_seq(self) -> int:
        return self._store.latest_seq()

    def history(self, request_id: str) -> list[EventRecord]:
        return list(self._store.list_for_request(request_id))
