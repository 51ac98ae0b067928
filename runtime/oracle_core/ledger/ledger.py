"""Request ledger: job creation and exactly-once fulfillment.

This ledger:
- Derives request ids deterministically from (consumer, subscription id, nonce)
- Stores pending jobs and emits `job_requested` events for the oracle
- Verifies fulfillments by recovering the signer from the payload signature
- Checks the recovered signer against the authority at fulfillment time
- Records the transition, then delivers the result to the consumer as the
  last step of the same unit of work

Every write runs inside the unit of work supplied by the caller (the
coordinator passes its store transaction). Fulfillment is atomic: if any check
fails, a store write fails or the consumer callback raises, the unit rolls
back, the job stays pending and nothing is recorded except the log line. A
failed store write therefore never leaves a consumer holding a value for a
job that still reads pending.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from typing import Any, Callable

from oracle_core.crypto import codec
from oracle_core.errors import AlreadyFulfilledError, BadSignatureError, ConsumerDeliveryError, UnauthorizedSignerError
from oracle_core.ledger.events import JOB_EXPIRED, JOB_FULFILLED, JOB_REQUESTED, EventBus, JobRequested
from oracle_core.ledger.state_machine import EXPIRED, FULFILLED, PENDING, TransitionRequest, apply_transition
from oracle_core.registry.authority import OffchainComputerAuthority
from oracle_core.storage.interfaces import JobRecord, JobStore
from oracle_core.utils import normalize_address, normalize_request_id, to_hex, utcnow

logger = logging.getLogger(__name__)

# (request_id, consumer, result_bytes) -> None; raising aborts the fulfillment.
DeliverFn = Callable[[str, str, bytes], None]
TransactionFn = Callable[[], AbstractContextManager[Any]]


class RequestLedger:
    def __init__(
        self,
        *,
        job_store: JobStore,
        authority: OffchainComputerAuthority,
        events: EventBus,
        deliver: DeliverFn,
        transaction: TransactionFn,
    ):
        self._jobs = job_store
        self._authority = authority
        self._events = events
        self._deliver = deliver
        self._transaction = transaction

    def create_job(self, consumer: str, subscription_id: int, nonce: int) -> str:
        consumer = normalize_address(consumer)
        request_id = codec.request_id(consumer, subscription_id, nonce)
        now = utcnow()
        job = JobRecord(
            request_id=request_id,
            consumer=consumer,
            subscription_id=subscription_id,
            nonce=nonce,
            state=PENDING,
            created_at=now,
            updated_at=now,
        )
        event = JobRequested(request_id=request_id, consumer=consumer, subscription_id=subscription_id, nonce=nonce)
        with self._transaction():
            self._jobs.create(job)
            self._events.emit(JOB_REQUESTED, request_id, event.to_details())
        logger.info(
            "job_requested",
            extra={"event": "job_requested", "request_id": request_id, "consumer": consumer, "subscription_id": subscription_id},
        )
        return request_id

    def get_job(self, request_id: str) -> JobRecord:
        return self._jobs.get(normalize_request_id(request_id))

    def pending_jobs(self) -> list[JobRecord]:
        return list(self._jobs.list_by_state(PENDING))

    def fulfill(self, request_id: str, result: bytes, signature: bytes, signer: str | None = None) -> JobRecord:
        """Accept a signed result for a pending job, at most once per request id.

        `signer` is an optional claim; identity always comes from the signature.
        """
        request_id = normalize_request_id(request_id)
        result = bytes(result)
        signature = bytes(signature)
        with self._transaction():
            job = self._jobs.get(request_id)
            if job.state != PENDING:
                raise AlreadyFulfilledError(request_id, job.state)

            recovered = codec.verify(codec.hash(result), signature)
            if signer is not None and normalize_address(signer) != recovered:
                raise BadSignatureError("signature was not produced by the claimed signer", details={"recovered": recovered})
            if not self._authority.is_authorized(recovered):
                logger.warning(
                    "fulfillment_rejected",
                    extra={"event": "fulfillment_rejected", "request_id": request_id, "signer": recovered, "code": "UNAUTHORIZED_SIGNER"},
                )
                raise UnauthorizedSignerError(recovered)

            updated = apply_transition(job, TransitionRequest(new_state=FULFILLED, now=utcnow(), signer=recovered, result=to_hex(result)))
            self._jobs.update(updated)
            self._events.emit(
                JOB_FULFILLED,
                request_id,
                {
                    "consumer": job.consumer,
                    "subscription_id": job.subscription_id,
                    "signer": recovered,
                    "result": to_hex(result),
                },
            )

            # Last step: a raising callback rolls back the update and the event.
            try:
                self._deliver(request_id, job.consumer, result)
            except Exception as e:
                logger.error(
                    "consumer_delivery_failed",
                    extra={"event": "consumer_delivery_failed", "request_id": request_id, "consumer": job.consumer},
                    exc_info=True,
                )
                raise ConsumerDeliveryError(f"Consumer callback failed for {request_id}: {e}") from e
        logger.info(
            "job_fulfilled",
            extra={"event": "job_fulfilled", "request_id": request_id, "consumer": job.consumer, "signer": recovered},
        )
        return updated

    def expire(self, request_id: str, reason: str) -> JobRecord:
        request_id = normalize_request_id(request_id)
        with self._transaction():
            job = self._jobs.get(request_id)
            updated = apply_transition(job, TransitionRequest(new_state=EXPIRED, now=utcnow(), expiry_reason=reason))
            self._jobs.update(updated)
            self._events.emit(JOB_EXPIRED, request_id, {"consumer": job.consumer, "reason": reason})
        logger.info("job_expired", extra={"event": "job_expired", "request_id": request_id, "consumer": job.consumer})
        return updated
