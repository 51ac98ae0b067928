"""Consumers: the receiving end of a fulfillment.

A consumer registers a callback under its address. When the ledger accepts a
fulfillment it pushes the encoded result to that callback; a callback that
raises aborts the fulfillment and leaves the job pending. Consumers without a
callback (for example ones driving the HTTP API) receive results in the
mailbox and read them back from the job record.
"""

from __future__ import annotations

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from oracle_core.crypto import codec
from oracle_core.errors import ContractViolationError
from oracle_core.utils import normalize_address, to_hex

if TYPE_CHECKING:
    from oracle_core.chain.coordinator import Coordinator

logger = logging.getLogger(__name__)


class JobConsumer(ABC):
    address: str

    @abstractmethod
    def on_fulfillment(self, request_id: str, result: bytes) -> None:
        """Receive a verified result. Raising rejects the fulfillment."""


class ResultMailbox:
    """Holds results for consumers that have no registered callback.

    Results stay until the consumer takes them with `pop` or `drain`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: dict[str, dict[str, bytes]] = {}

    def put(self, consumer: str, request_id: str, result: bytes) -> None:
        with self._lock:
            self._results.setdefault(consumer, {})[request_id] = result

    def results_for(self, consumer: str) -> dict[str, bytes]:
        with self._lock:
            return dict(self._results.get(normalize_address(consumer), {}))

    def pop(self, consumer: str, request_id: str) -> bytes | None:
        """Remove and return one result once the consumer has handled it."""
        consumer = normalize_address(consumer)
        with self._lock:
            results = self._results.get(consumer)
            if not results:
                return None
            result = results.pop(request_id, None)
            if not results:
                del self._results[consumer]
            return result

    def drain(self, consumer: str) -> dict[str, bytes]:
        """Remove and return every result held for the consumer."""
        with self._lock:
            return self._results.pop(normalize_address(consumer), {})


class ConsumerDirectory:
    def __init__(self, mailbox: ResultMailbox | None = None):
        self._lock = threading.Lock()
        self._consumers: dict[str, JobConsumer] = {}
        self.mailbox = mailbox or ResultMailbox()

    def register(self, consumer: JobConsumer) -> None:
        with self._lock:
            self._consumers[normalize_address(consumer.address)] = consumer

    def unregister(self, address: str) -> None:
        with self._lock:
            self._consumers.pop(normalize_address(address), None)

    def deliver(self, request_id: str, consumer: str, result: bytes) -> None:
        with self._lock:
            target = self._consumers.get(consumer)
        if target is None:
            self.mailbox.put(consumer, request_id, result)
            return
        target.on_fulfillment(request_id, result)


class RandomConsumer(JobConsumer):
    """Requests a random number through the coordinator and stores the delivered word."""

    def __init__(self, coordinator: "Coordinator", subscription_id: int, address: str | None = None):
        self._coordinator = coordinator
        self.subscription_id = subscription_id
        self.address = normalize_address(address) if address else to_hex(secrets.token_bytes(20))
        self.request_id: str | None = None
        self.random_word: int | None = None
        self._pending: set[str] = set()
        coordinator.consumers.register(self)

    def request_random_number(self) -> str:
        # Record the id before any oracle can deliver for it.
        with self._coordinator.transaction():
            request_id = self._coordinator.request_job(self.address, self.subscription_id)
            self.request_id = request_id
            self._pending.add(request_id)
        return request_id

    def on_fulfillment(self, request_id: str, result: bytes) -> None:
        if request_id not in self._pending:
            raise ContractViolationError(f"Unexpected fulfillment for {request_id}", code="UNKNOWN_CONSUMER_REQUEST")
        self.random_word = codec.decode(result)
        self._pending.discard(request_id)
        logger.info("random_word_received", extra={"event": "random_word_received", "request_id": request_id, "consumer": self.address})
