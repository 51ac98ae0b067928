"""Scheduler: feeds job-request events to the oracle.

The scheduler keeps the oracle modular:
- the ledger appends `job_requested` events to the event log
- the scheduler follows the log with a cursor and dispatches each event
- the oracle performs bounded compute/sign/submit work per request

Delivery is at-least-once. On start the cursor is placed at the end of the
log and every job still pending in the ledger is dispatched, which covers
events emitted while no oracle was listening. The oracle's per-request dedupe
and the ledger's `already fulfilled` answer absorb any duplicates.

Run a standalone oracle next to a coordinator sharing the same SQLite file:
  python -m oracle_core.scheduler.runner
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from oracle_core.config.settings import SchedulerConfig
from oracle_core.ledger.events import JOB_REQUESTED, EventBus, JobRequested
from oracle_core.oracle.worker import OracleCoordinator
from oracle_core.storage.interfaces import JobRecord

logger = logging.getLogger(__name__)


@dataclass
class Scheduler:
    config: SchedulerConfig
    events: EventBus
    oracle: OracleCoordinator
    pending_jobs: Callable[[], Iterable[JobRecord]] | None = None
    cursor: int | None = None
    _stop: threading.Event = field(default_factory=threading.Event, init=False)
    _thread: threading.Thread | None = field(default=None, init=False)

    def start(self) -> int:
        """Place the cursor once and return it."""
        if self.cursor is not None:
            return self.cursor
        self.cursor = self.events.latest_seq()
        if self.config.redrive_pending_on_start and self.pending_jobs is not None:
            count = 0
            for job in self.pending_jobs():
                event = JobRequested(request_id=job.request_id, consumer=job.consumer, subscription_id=job.subscription_id, nonce=job.nonce)
                if self.oracle.dispatch(event) is not None:
                    count += 1
            logger.info("scheduler_redrive_pending", extra={"event": "scheduler_redrive_pending", "attempt": count})
        return self.cursor

    def run_once(self) -> int:
        """Dispatch every job_requested event after the cursor. Returns the count dispatched."""
        cursor = self.start()
        dispatched = 0
        for event in self.events.since(cursor):
            self.cursor = event.seq
            if event.event_type != JOB_REQUESTED:
                continue
            if self.oracle.dispatch(JobRequested.from_record(event)) is not None:
                dispatched += 1
        return dispatched

    def run_forever(self) -> None:
        if not self.config.enabled:
            logger.info("scheduler_disabled", extra={"event": "scheduler_disabled"})
            return
        self.start()
        logger.info("scheduler_started", extra={"event": "scheduler_started"})
        while not self._stop.is_set():
            if self.run_once() == 0:
                self._stop.wait(self.config.poll_interval_seconds)
        logger.info("scheduler_stopped", extra={"event": "scheduler_stopped"})

    def start_background(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run_forever, name="oracle-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.config.poll_interval_seconds * 2 + 1)


def main() -> int:
    from oracle_core.api.main import build_components

    runtime_path = os.environ.get("ORACLE_RUNTIME_CONFIG")
    logging_path = os.environ.get("ORACLE_LOGGING_CONFIG")
    components = build_components(
        runtime_config_path=Path(runtime_path) if runtime_path else None,
        logging_config_path=Path(logging_path) if logging_path else None,
    )
    if components.scheduler is None or components.oracle is None:
        logger.error("scheduler_unavailable", extra={"event": "scheduler_unavailable", "code": "ORACLE_DISABLED"})
        return 1
    if components.config.storage.driver != "sqlite" or components.config.oracle.submit_url is None:
        # A separate process only sees the coordinator's events through the shared
        # SQLite file and must submit through the coordinator's HTTP API.
        logger.error("scheduler_unavailable", extra={"event": "scheduler_unavailable", "code": "STANDALONE_REQUIRES_SQLITE_AND_SUBMIT_URL"})
        return 1
    try:
        components.scheduler.run_forever()
    except KeyboardInterrupt:
        components.scheduler.stop()
    finally:
        components.oracle.shutdown(wait=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
