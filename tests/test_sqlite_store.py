from __future__ import annotations

import sqlite3

import pytest

from oracle_core.chain.coordinator import Coordinator, CoordinatorSettings
from oracle_core.crypto import codec
from oracle_core.crypto.codec import UINT256_MAX
from oracle_core.errors import ConflictError, NotFoundError, PolicyViolationError, UnknownRequestError
from oracle_core.ledger.events import JOB_FULFILLED, JOB_REQUESTED
from oracle_core.ledger.state_machine import FULFILLED, PENDING
from oracle_core.storage.interfaces import JobRecord, SubscriptionRecord
from oracle_core.storage.sqlite import SQLiteStores
from oracle_core.utils import utcnow

from conftest import make_signer


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "state" / "coordinator.sqlite"


def test_uint256_nonce_round_trips(db_path):
    stores = SQLiteStores(db_path)
    stores.subscriptions.create(SubscriptionRecord(subscription_id=0, owner="0x" + "11" * 20, created_at=utcnow()))

    stores.subscriptions.set_nonce("0x" + "c0" * 20, 0, UINT256_MAX)

    assert stores.subscriptions.get_nonce("0x" + "c0" * 20, 0) == UINT256_MAX
    assert stores.subscriptions.get_nonce("0x" + "c1" * 20, 0) is None


def test_missing_rows_raise_typed_errors(db_path):
    stores = SQLiteStores(db_path)

    with pytest.raises(NotFoundError):
        stores.subscriptions.get(3)
    with pytest.raises(NotFoundError):
        stores.subscriptions.set_consumer(3, "0x" + "c0" * 20, member=True)
    with pytest.raises(UnknownRequestError):
        stores.jobs.get("0x" + "00" * 32)


def test_duplicate_job_is_conflict(db_path):
    stores = SQLiteStores(db_path)
    now = utcnow()
    job = JobRecord(request_id="0x" + "01" * 32, consumer="0x" + "c0" * 20, subscription_id=0, nonce=2, state=PENDING, created_at=now, updated_at=now)
    stores.jobs.create(job)

    with pytest.raises(ConflictError):
        stores.jobs.create(job)


def test_event_log_sequence(db_path):
    stores = SQLiteStores(db_path)
    assert stores.events.latest_seq() == 0

    first = stores.events.append(event_type=JOB_REQUESTED, request_id="0x" + "01" * 32, details={"nonce": "2"})
    second = stores.events.append(event_type=JOB_FULFILLED, request_id="0x" + "01" * 32)

    assert (first.seq, second.seq) == (1, 2)
    assert stores.events.latest_seq() == 2
    assert [e.seq for e in stores.events.list_since(1)] == [2]
    assert list(stores.events.list_since(0))[0].details == {"nonce": "2"}


def test_state_survives_reopen(db_path):
    owner, oracle_key = make_signer(1), make_signer(2)
    consumer = "0x" + "c0" * 20

    c = Coordinator(settings=CoordinatorSettings(owner=owner.address), stores=SQLiteStores(db_path))
    sub_id = c.create_subscription(owner.address)
    c.add_consumer(sub_id, consumer, owner.address)
    c.update_offchain_computer(oracle_key.address, True, owner.address)
    request_id = c.request_job(consumer, sub_id)

    reopened = Coordinator(settings=CoordinatorSettings(owner=owner.address), stores=SQLiteStores(db_path))
    assert reopened.consumer_nonce(consumer, sub_id) == 2
    assert reopened.sub_id_to_subscription(sub_id).consumers == frozenset({consumer})
    assert reopened.authority.is_authorized(oracle_key.address)
    assert [j.request_id for j in reopened.ledger.pending_jobs()] == [request_id]

    encoded = codec.encode(4242)
    job = reopened.fulfill_job_for_random(request_id, encoded, oracle_key.sign_digest(codec.hash(encoded)))

    assert job.state == FULFILLED
    assert reopened.consumers.mailbox.results_for(consumer) == {request_id: encoded}
    assert [e.event_type for e in reopened.events.history(request_id)] == [JOB_REQUESTED, JOB_FULFILLED]
    assert reopened.create_subscription(owner.address) == 1


def test_unsupported_schema_version_fails_closed(db_path):
    SQLiteStores(db_path)
    conn = sqlite3.connect(str(db_path))
    conn.execute("UPDATE schema_version SET version = 99;")
    conn.commit()
    conn.close()

    with pytest.raises(PolicyViolationError):
        SQLiteStores(db_path)
