from __future__ import annotations

import time

from oracle_core.config.settings import SchedulerConfig
from oracle_core.crypto.keys import KeyProvider
from oracle_core.ledger.state_machine import FULFILLED, PENDING
from oracle_core.oracle.submitters import LedgerSubmitter
from oracle_core.oracle.worker import OracleCoordinator
from oracle_core.scheduler.runner import Scheduler


def _scheduler(deployment, *, redrive=True, poll=0.01):
    c = deployment.coordinator
    oracle = OracleCoordinator(submitter=LedgerSubmitter(c), source=lambda: 7, keys=KeyProvider(deployment.oracle_key), sleep=lambda _s: None)
    scheduler = Scheduler(
        config=SchedulerConfig(enabled=True, poll_interval_seconds=poll, redrive_pending_on_start=redrive),
        events=c.events,
        oracle=oracle,
        pending_jobs=c.ledger.pending_jobs,
    )
    return scheduler, oracle


def _authorize(deployment):
    deployment.coordinator.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)


def test_start_redrives_jobs_left_pending(deployment):
    _authorize(deployment)
    earlier = deployment.consumer.request_random_number()
    scheduler, oracle = _scheduler(deployment)

    scheduler.start()
    oracle.shutdown(wait=True)

    assert deployment.coordinator.get_job(earlier).state == FULFILLED
    assert scheduler.cursor == deployment.coordinator.events.latest_seq() - 1


def test_start_without_redrive_skips_old_jobs(deployment):
    _authorize(deployment)
    earlier = deployment.consumer.request_random_number()
    scheduler, oracle = _scheduler(deployment, redrive=False)

    scheduler.start()
    assert scheduler.run_once() == 0
    oracle.shutdown(wait=True)

    assert deployment.coordinator.get_job(earlier).state == PENDING


def test_run_once_dispatches_new_requests_only_once(deployment):
    _authorize(deployment)
    scheduler, oracle = _scheduler(deployment)
    scheduler.start()

    first = deployment.consumer.request_random_number()
    second = deployment.consumer.request_random_number()

    assert scheduler.run_once() == 2
    assert scheduler.run_once() == 0
    oracle.shutdown(wait=True)

    assert deployment.coordinator.get_job(first).state == FULFILLED
    assert deployment.coordinator.get_job(second).state == FULFILLED


def test_replayed_cursor_does_not_redispatch(deployment):
    _authorize(deployment)
    scheduler, oracle = _scheduler(deployment)
    scheduler.start()
    deployment.consumer.request_random_number()
    assert scheduler.run_once() == 1

    scheduler.cursor = 0

    assert scheduler.run_once() == 0
    oracle.shutdown(wait=True)


def test_background_loop_fulfills_requests(deployment):
    _authorize(deployment)
    scheduler, oracle = _scheduler(deployment)
    scheduler.start_background()
    try:
        request_id = deployment.consumer.request_random_number()
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline and deployment.coordinator.get_job(request_id).state != FULFILLED:
            time.sleep(0.01)
    finally:
        scheduler.stop()
        oracle.shutdown(wait=True)

    assert deployment.coordinator.get_job(request_id).state == FULFILLED
    assert deployment.consumer.random_word == 7


def test_run_once_places_the_cursor_without_an_explicit_start(deployment):
    _authorize(deployment)
    scheduler, oracle = _scheduler(deployment, redrive=False)
    deployment.consumer.request_random_number()

    assert scheduler.run_once() == 0
    assert scheduler.start() == scheduler.cursor == deployment.coordinator.events.latest_seq()

    later = deployment.consumer.request_random_number()
    assert scheduler.run_once() == 1
    oracle.shutdown(wait=True)

    assert deployment.coordinator.get_job(later).state == FULFILLED
