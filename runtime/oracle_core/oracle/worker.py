"""Oracle coordinator: request -> compute -> sign -> submit.

This worker:
- Tracks one task per request id through the oracle state machine
- Calls the randomness source under a timeout, with bounded retries
- Encodes, hashes and signs with the key provider's current key
- Submits through a Submitter, retrying transient failures with capped
  exponential backoff and never retrying a semantic rejection
- Treats `already fulfilled` as success (another worker won the race)
- Marks everything else failed, logs it for the operator and calls the
  failure hook; failed tasks run again only through `redrive`
- Forgets confirmed tasks once they are older than the completed-task TTL or
  beyond the completed-task cap; a redelivered event for a forgotten request
  runs again and ends in confirmed through the ledger's `already fulfilled`

Distinct request ids run concurrently on a bounded thread pool. There is no
cross-request ordering and no oracle-side locking around the ledger: the
ledger alone decides which fulfillment is accepted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, TypeVar

from oracle_core.crypto import codec
from oracle_core.crypto.keys import KeyProvider
from oracle_core.errors import AlreadyFulfilledError, ConflictError, NotFoundError, OracleRuntimeError, TransientError
from oracle_core.ledger.events import JobRequested
from oracle_core.oracle.sources import RandomnessSource
from oracle_core.oracle.state_machine import (
    COMPUTING,
    CONFIRMED,
    FAILED,
    OBSERVED,
    SIGNED,
    SUBMITTED,
    OracleTask,
    transition,
)
from oracle_core.oracle.submitters import Submitter
from oracle_core.utils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OracleSettings:
    workers: int = 4
    submit_max_attempts: int = 5
    submit_timeout_seconds: float = 10.0
    source_timeout_seconds: float = 5.0
    source_max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    completed_task_ttl_seconds: float = 600.0
    max_completed_tasks: int = 10000

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


class _TaskFailed(Exception):
    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


class OracleCoordinator:
    def __init__(
        self,
        *,
        submitter: Submitter,
        source: RandomnessSource,
        keys: KeyProvider,
        settings: OracleSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_failure: Callable[[OracleTask], None] | None = None,
    ):
        self._submitter = submitter
        self._source = source
        self._keys = keys
        self._settings = settings or OracleSettings()
        self._sleep = sleep
        self._on_failure = on_failure
        self._lock = threading.Lock()
        self._tasks: dict[str, OracleTask] = {}
        # Confirmed request ids in confirmation order.
        self._completed: OrderedDict[str, datetime] = OrderedDict()
        self._pool = ThreadPoolExecutor(max_workers=self._settings.workers, thread_name_prefix="oracle-worker")
        # Separate pool so a hung source or submitter call cannot starve the task workers.
        self._calls = ThreadPoolExecutor(max_workers=self._settings.workers * 2, thread_name_prefix="oracle-call")

    # Task bookkeeping

    def task(self, request_id: str) -> OracleTask | None:
        with self._lock:
            return self._tasks.get(request_id)

    def tasks(self) -> list[OracleTask]:
        with self._lock:
            return list(self._tasks.values())

    def failed_tasks(self) -> list[OracleTask]:
        return [t for t in self.tasks() if t.state == FAILED]

    def _require(self, request_id: str) -> OracleTask:
        task = self.task(request_id)
        if task is None:
            raise NotFoundError("OracleTask", request_id)
        return task

    def _set(self, request_id: str, new_state: str, **changes) -> OracleTask:
        with self._lock:
            if request_id not in self._tasks:
                raise NotFoundError("OracleTask", request_id)
            task = transition(self._tasks[request_id], new_state, utcnow(), **changes)
            self._tasks[request_id] = task
            if new_state == CONFIRMED:
                self._completed[request_id] = task.updated_at
        logger.debug(
            "oracle_task_state",
            extra={"event": "oracle_task_state", "request_id": request_id, "state": new_state, "attempt": task.attempts},
        )
        return task

    def evict_completed(self) -> int:
        """Forget confirmed tasks past the TTL or the cap. Returns how many were dropped."""
        with self._lock:
            return self._evict_completed_locked(utcnow())

    def _evict_completed_locked(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self._settings.completed_task_ttl_seconds)
        evicted = 0
        while self._completed:
            request_id, confirmed_at = next(iter(self._completed.items()))
            if confirmed_at > cutoff and len(self._completed) <= self._settings.max_completed_tasks:
                break
            self._completed.popitem(last=False)
            self._tasks.pop(request_id, None)
            evicted += 1
        if evicted:
            logger.debug("oracle_tasks_evicted", extra={"event": "oracle_tasks_evicted", "attempt": evicted})
        return evicted

    def observe(self, event: JobRequested) -> bool:
        """Register a task for the event. Returns False for a redelivered request."""
        with self._lock:
            self._evict_completed_locked(utcnow())
            existing = self._tasks.get(event.request_id)
            if existing is not None:
                logger.info(
                    "oracle_event_duplicate",
                    extra={"event": "oracle_event_duplicate", "request_id": event.request_id, "state": existing.state},
                )
                return False
            self._tasks[event.request_id] = OracleTask(
                request_id=event.request_id,
                consumer=event.consumer,
                subscription_id=event.subscription_id,
                state=OBSERVED,
                updated_at=utcnow(),
            )
        logger.info(
            "oracle_event_observed",
            extra={"event": "oracle_event_observed", "request_id": event.request_id, "consumer": event.consumer, "subscription_id": event.subscription_id},
        )
        return True

    # Entry points

    def process(self, event: JobRequested) -> OracleTask:
        """Observe and run a request inline; returns the task's final state."""
        if self.observe(event):
            return self._run(event.request_id)
        return self._require(event.request_id)

    def dispatch(self, event: JobRequested) -> Future | None:
        """Observe and run a request on the worker pool. None for duplicates.

        The future resolves to the task's final state.
        """
        if not self.observe(event):
            return None
        return self._pool.submit(self._run, event.request_id)

    def redrive(self, request_id: str) -> OracleTask:
        """Re-run a failed task from the start with a freshly computed, freshly signed payload.

        Only a failed task can be redriven; concurrent redrives of the same task
        run it once and the others get ConflictError.
        """
        with self._lock:
            task = self._tasks.get(request_id)
            if task is None:
                raise NotFoundError("OracleTask", request_id)
            if task.state != FAILED:
                raise ConflictError(f"Only failed tasks can be redriven (state={task.state})", details={"request_id": request_id})
            self._tasks[request_id] = transition(
                task, OBSERVED, utcnow(), attempts=0, value=None, encoded_result=None, signature=None, signer=None, error_code=None, error=None
            )
        logger.info("oracle_task_redriven", extra={"event": "oracle_task_redriven", "request_id": request_id})
        return self._run(request_id)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        self._calls.shutdown(wait=False)

    # Pipeline

    def _bounded(self, fn: Callable[[], T], timeout: float) -> T:
        fut = self._calls.submit(fn)
        try:
            return fut.result(timeout=timeout)
        except FutureTimeoutError as e:
            fut.cancel()
            raise TransientError(f"call exceeded {timeout}s") from e

    def _run(self, request_id: str) -> OracleTask:
        try:
            self._set(request_id, COMPUTING)
            value = self._compute(request_id)
            encoded = codec.encode(value)
            signer = self._keys.current()
            signature = signer.sign_digest(codec.hash(encoded))
            self._set(request_id, SIGNED, value=value, encoded_result=encoded, signature=signature, signer=signer.address)
            return self._submit(request_id, encoded, signature)
        except _TaskFailed as e:
            return self._fail(request_id, e.code, str(e))
        except OracleRuntimeError as e:
            return self._fail(request_id, e.code, str(e))
        except Exception as e:
            logger.exception("oracle_task_crashed", extra={"event": "oracle_task_crashed", "request_id": request_id})
            return self._fail(request_id, "INTERNAL", f"{type(e).__name__}: {e}")

    def _compute(self, request_id: str) -> int:
        attempts = self._settings.source_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._bounded(self._source, self._settings.source_timeout_seconds)
            except TransientError as e:
                logger.warning(
                    "oracle_source_timeout",
                    extra={"event": "oracle_source_timeout", "request_id": request_id, "attempt": attempt},
                )
                if attempt == attempts:
                    raise _TaskFailed("SOURCE_UNAVAILABLE", f"randomness source timed out {attempts} time(s)") from e
        raise _TaskFailed("SOURCE_UNAVAILABLE", "randomness source was not attempted")

    def _submit(self, request_id: str, encoded: bytes, signature: bytes) -> OracleTask:
        attempts = self._settings.submit_max_attempts
        for attempt in range(1, attempts + 1):
            self._set(request_id, SUBMITTED, attempts=attempt)
            try:
                self._bounded(
                    lambda: self._submitter.submit(request_id, encoded, signature, timeout=self._settings.submit_timeout_seconds),
                    self._settings.submit_timeout_seconds,
                )
            except AlreadyFulfilledError:
                logger.info(
                    "oracle_already_fulfilled",
                    extra={"event": "oracle_already_fulfilled", "request_id": request_id, "attempt": attempt},
                )
                return self._set(request_id, CONFIRMED)
            except TransientError as e:
                if attempt == attempts:
                    raise _TaskFailed("SUBMIT_RETRIES_EXHAUSTED", f"submission failed after {attempts} attempt(s): {e}") from e
                delay = self._settings.backoff(attempt)
                logger.warning(
                    "oracle_submit_retry",
                    extra={"event": "oracle_submit_retry", "request_id": request_id, "attempt": attempt, "code": e.code},
                )
                self._set(request_id, SIGNED)
                self._sleep(delay)
                continue
            task = self._set(request_id, CONFIRMED)
            logger.info("oracle_request_confirmed", extra={"event": "oracle_request_confirmed", "request_id": request_id, "attempt": attempt})
            return task
        raise _TaskFailed("SUBMIT_RETRIES_EXHAUSTED", "submission was not attempted")

    def _fail(self, request_id: str, code: str, message: str) -> OracleTask:
        task = self._set(request_id, FAILED, error_code=code, error=message)
        logger.error(
            "oracle_request_failed",
            extra={"event": "oracle_request_failed", "request_id": request_id, "code": code, "state": FAILED, "signer": task.signer},
        )
        if self._on_failure is not None:
            try:
                self._on_failure(task)
            except Exception:
                logger.exception("oracle_failure_hook_error", extra={"event": "oracle_failure_hook_error", "request_id": request_id})
        return task
