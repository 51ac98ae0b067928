from __future__ import annotations

import pytest

from oracle_core.chain.coordinator import Coordinator, CoordinatorSettings
from oracle_core.ledger.events import JOB_REQUESTED
from oracle_core.storage.interfaces import SubscriptionRecord
from oracle_core.storage.memory import MemoryStores
from oracle_core.storage.sqlite import SQLiteStores
from oracle_core.utils import utcnow

from conftest import make_signer

CONSUMER = "0x" + "c0" * 20


@pytest.fixture(params=["memory", "sqlite"])
def make_stores(request, tmp_path):
    """Factory whose every call opens the same underlying state again."""
    if request.param == "memory":
        stores = MemoryStores()
        return lambda: stores
    path = tmp_path / "state" / "coordinator.sqlite"
    return lambda: SQLiteStores(path)


def _subscription(subscription_id: int) -> SubscriptionRecord:
    return SubscriptionRecord(subscription_id=subscription_id, owner="0x" + "11" * 20, created_at=utcnow())


def test_transaction_commits_every_write(make_stores):
    stores = make_stores()

    with stores.transaction():
        stores.subscriptions.create(_subscription(0))
        stores.subscriptions.set_nonce(CONSUMER, 0, 1)
        stores.events.append(event_type=JOB_REQUESTED, request_id="0x" + "01" * 32)

    reopened = make_stores()
    assert reopened.subscriptions.get(0).subscription_id == 0
    assert reopened.subscriptions.get_nonce(CONSUMER, 0) == 1
    assert reopened.events.latest_seq() == 1


def test_transaction_rolls_back_every_write_on_error(make_stores):
    stores = make_stores()

    with pytest.raises(RuntimeError):
        with stores.transaction():
            stores.subscriptions.create(_subscription(0))
            stores.subscriptions.set_nonce(CONSUMER, 0, 1)
            stores.events.append(event_type=JOB_REQUESTED, request_id="0x" + "01" * 32)
            raise RuntimeError("abort")

    reopened = make_stores()
    assert list(reopened.subscriptions.list()) == []
    assert reopened.subscriptions.get_nonce(CONSUMER, 0) is None
    assert reopened.events.latest_seq() == 0


def test_nested_failure_rolls_back_only_the_inner_unit(make_stores):
    stores = make_stores()

    with stores.transaction():
        stores.subscriptions.create(_subscription(0))
        try:
            with stores.transaction():
                stores.subscriptions.set_nonce(CONSUMER, 0, 1)
                raise ValueError("inner")
        except ValueError:
            pass
        stores.subscriptions.create(_subscription(1))

    reopened = make_stores()
    assert [s.subscription_id for s in reopened.subscriptions.list()] == [0, 1]
    assert reopened.subscriptions.get_nonce(CONSUMER, 0) is None


def test_failed_request_leaves_no_partial_state(make_stores, monkeypatch):
    owner = make_signer(1)
    stores = make_stores()
    c = Coordinator(settings=CoordinatorSettings(owner=owner.address), stores=stores)
    sub_id = c.create_subscription(owner.address)
    c.add_consumer(sub_id, CONSUMER, owner.address)

    def fail(**_kwargs):
        raise RuntimeError("event log unavailable")

    monkeypatch.setattr(stores.events, "append", fail)
    with pytest.raises(RuntimeError):
        c.request_job(CONSUMER, sub_id)
    monkeypatch.undo()

    reopened = Coordinator(settings=CoordinatorSettings(owner=owner.address), stores=make_stores())
    assert reopened.consumer_nonce(CONSUMER, sub_id) == 1
    assert reopened.ledger.pending_jobs() == []
    assert reopened.events.latest_seq() == 0

    request_id = c.request_job(CONSUMER, sub_id)
    assert [e.request_id for e in reopened.events.since(0, JOB_REQUESTED)] == [request_id]
