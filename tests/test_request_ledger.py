from __future__ import annotations

import threading

import pytest

from oracle_core.chain.consumer import JobConsumer, RandomConsumer
from oracle_core.crypto import codec
from oracle_core.errors import (
    AlreadyFulfilledError,
    BadSignatureError,
    ConsumerDeliveryError,
    UnauthorizedError,
    UnauthorizedSignerError,
    UnknownRequestError,
)
from oracle_core.ledger.events import JOB_FULFILLED, JOB_REQUESTED
from oracle_core.ledger.state_machine import EXPIRED, FULFILLED, PENDING
from oracle_core.utils import from_hex

from conftest import job_requested_events, make_signer


def _payload(signer, value):
    encoded = codec.encode(value)
    return encoded, signer.sign_digest(codec.hash(encoded))


def test_request_creates_pending_job_and_event(deployment):
    c = deployment.coordinator
    request_id = deployment.consumer.request_random_number()

    job = c.get_job(request_id)
    assert job.state == PENDING
    assert job.nonce == 2
    assert request_id == codec.request_id(deployment.consumer.address, deployment.subscription_id, 2)

    events = job_requested_events(c)
    assert [e.request_id for e in events] == [request_id]
    assert events[0].nonce == 2


def test_request_ids_are_distinct_per_request(deployment):
    first = deployment.consumer.request_random_number()
    second = deployment.consumer.request_random_number()

    assert first != second
    assert deployment.coordinator.consumer_nonce(deployment.consumer.address, deployment.subscription_id) == 3


def test_fulfill_delivers_result_and_records_signer(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    request_id = deployment.consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 4242)

    job = c.fulfill_job_for_random(request_id, encoded, signature)

    assert job.state == FULFILLED
    assert job.signer == deployment.oracle_key.address
    assert codec.decode(from_hex(job.result)) == 4242
    assert deployment.consumer.random_word == 4242
    assert [e.event_type for e in c.events.history(request_id)] == [JOB_REQUESTED, JOB_FULFILLED]


def test_fulfill_accepts_hex_payload(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    request_id = deployment.consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 99)

    c.fulfill_job_for_random(request_id, "0x" + encoded.hex(), "0x" + signature.hex())

    assert deployment.consumer.random_word == 99


def test_unknown_request_is_rejected(deployment):
    encoded, signature = _payload(deployment.oracle_key, 1)

    with pytest.raises(UnknownRequestError):
        deployment.coordinator.fulfill_job_for_random("0x" + "00" * 32, encoded, signature)


def test_second_fulfillment_is_already_fulfilled(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    request_id = deployment.consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 1)
    c.fulfill_job_for_random(request_id, encoded, signature)

    other_encoded, other_signature = _payload(deployment.oracle_key, 2)
    with pytest.raises(AlreadyFulfilledError):
        c.fulfill_job_for_random(request_id, other_encoded, other_signature)
    assert deployment.consumer.random_word == 1


def test_concurrent_fulfillments_accept_exactly_one(deployment):
    c = deployment.coordinator
    signers = [make_signer(n) for n in range(10, 18)]
    for s in signers:
        c.update_offchain_computer(s.address, True, deployment.owner.address)
    request_id = deployment.consumer.request_random_number()

    accepted: list[str] = []
    rejected: list[Exception] = []
    barrier = threading.Barrier(len(signers))

    def submit(signer):
        encoded, signature = _payload(signer, int(signer.address, 16) % 1000)
        barrier.wait()
        try:
            c.fulfill_job_for_random(request_id, encoded, signature)
            accepted.append(signer.address)
        except AlreadyFulfilledError as e:
            rejected.append(e)

    threads = [threading.Thread(target=submit, args=(s,)) for s in signers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(accepted) == 1
    assert len(rejected) == len(signers) - 1
    assert c.get_job(request_id).signer == accepted[0]


def test_unauthorized_signer_is_rejected_and_job_stays_pending(deployment):
    c = deployment.coordinator
    request_id = deployment.consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 4242)

    with pytest.raises(UnauthorizedSignerError) as exc:
        c.fulfill_job_for_random(request_id, encoded, signature)

    assert exc.value.signer == deployment.oracle_key.address
    assert c.get_job(request_id).state == PENDING
    assert deployment.consumer.random_word is None


def test_revocation_applies_to_already_signed_payload(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    request_id = deployment.consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 4242)

    c.update_offchain_computer(deployment.oracle_key.address, False, deployment.owner.address)

    with pytest.raises(UnauthorizedSignerError):
        c.fulfill_job_for_random(request_id, encoded, signature)
    assert c.get_job(request_id).state == PENDING


def test_malformed_signature_is_bad_signature(deployment):
    c = deployment.coordinator
    request_id = deployment.consumer.request_random_number()

    with pytest.raises(BadSignatureError):
        c.fulfill_job_for_random(request_id, codec.encode(1), b"\x01" * 64)
    assert c.get_job(request_id).state == PENDING


def test_claimed_signer_must_match_recovered(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    request_id = deployment.consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 5)

    with pytest.raises(BadSignatureError):
        c.ledger.fulfill(request_id, encoded, signature, signer=make_signer(3).address)

    job = c.ledger.fulfill(request_id, encoded, signature, signer=deployment.oracle_key.address)
    assert job.state == FULFILLED


class _RefusingConsumer(JobConsumer):
    def __init__(self, address):
        self.address = address
        self.refuse = True
        self.received: list[bytes] = []

    def on_fulfillment(self, request_id, result):
        if self.refuse:
            raise RuntimeError("consumer out of gas")
        self.received.append(result)


def test_consumer_failure_keeps_job_pending(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    consumer = _RefusingConsumer("0x" + "ee" * 20)
    c.consumers.register(consumer)
    c.add_consumer(deployment.subscription_id, consumer.address, deployment.owner.address)
    request_id = c.request_job(consumer.address, deployment.subscription_id)
    encoded, signature = _payload(deployment.oracle_key, 77)

    with pytest.raises(ConsumerDeliveryError):
        c.fulfill_job_for_random(request_id, encoded, signature)
    assert c.get_job(request_id).state == PENDING
    assert [e.event_type for e in c.events.history(request_id)] == [JOB_REQUESTED]

    consumer.refuse = False
    assert c.fulfill_job_for_random(request_id, encoded, signature).state == FULFILLED
    assert consumer.received == [encoded]


def test_consumer_without_callback_receives_result_in_mailbox(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    address = "0x" + "dd" * 20
    c.add_consumer(deployment.subscription_id, address, deployment.owner.address)
    request_id = c.request_job(address, deployment.subscription_id)
    encoded, signature = _payload(deployment.oracle_key, 8)

    c.fulfill_job_for_random(request_id, encoded, signature)

    assert c.consumers.mailbox.results_for(address) == {request_id: encoded}


def test_mailbox_results_are_removed_once_taken(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    address = "0x" + "dd" * 20
    c.add_consumer(deployment.subscription_id, address, deployment.owner.address)
    first = c.request_job(address, deployment.subscription_id)
    second = c.request_job(address, deployment.subscription_id)
    third = c.request_job(address, deployment.subscription_id)
    payloads = {r: _payload(deployment.oracle_key, n) for n, r in enumerate((first, second, third), start=1)}
    for request_id, (encoded, signature) in payloads.items():
        c.fulfill_job_for_random(request_id, encoded, signature)
    mailbox = c.consumers.mailbox

    assert mailbox.pop(address, first) == payloads[first][0]
    assert mailbox.pop(address, first) is None
    assert mailbox.drain(address) == {second: payloads[second][0], third: payloads[third][0]}
    assert mailbox.results_for(address) == {}
    assert mailbox.drain(address) == {}


class _ChainingConsumer(RandomConsumer):
    """Requests its next number from inside the fulfillment callback."""

    def on_fulfillment(self, request_id, result):
        super().on_fulfillment(request_id, result)
        self.request_random_number()


def test_consumer_callback_may_call_back_into_coordinator(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    consumer = _ChainingConsumer(c, deployment.subscription_id)
    c.add_consumer(deployment.subscription_id, consumer.address, deployment.owner.address)
    first = consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 3)

    c.fulfill_job_for_random(first, encoded, signature)

    assert consumer.random_word == 3
    assert consumer.request_id != first
    assert c.get_job(consumer.request_id).state == PENDING


def test_expire_is_owner_only_and_blocks_fulfillment(deployment, stranger):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    request_id = deployment.consumer.request_random_number()

    with pytest.raises(UnauthorizedError):
        c.expire_job(request_id, stranger.address)

    job = c.expire_job(request_id, deployment.owner.address, reason="timed_out")
    assert job.state == EXPIRED
    assert job.expiry_reason == "timed_out"

    encoded, signature = _payload(deployment.oracle_key, 1)
    with pytest.raises(AlreadyFulfilledError):
        c.fulfill_job_for_random(request_id, encoded, signature)
    with pytest.raises(AlreadyFulfilledError):
        c.expire_job(request_id, deployment.owner.address)


def test_pending_jobs_lists_only_pending(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    done = deployment.consumer.request_random_number()
    open_ = deployment.consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 1)
    c.fulfill_job_for_random(done, encoded, signature)

    assert [j.request_id for j in c.ledger.pending_jobs()] == [open_]


def _fail(*_args, **_kwargs):
    raise RuntimeError("store unavailable")


def test_failed_event_write_rolls_back_the_request(deployment, stores, monkeypatch):
    c = deployment.coordinator
    consumer = deployment.consumer.address
    monkeypatch.setattr(stores.events, "append", _fail)

    with pytest.raises(RuntimeError):
        c.request_job(consumer, deployment.subscription_id)

    assert c.consumer_nonce(consumer, deployment.subscription_id) == 1
    assert c.ledger.pending_jobs() == []
    monkeypatch.undo()
    assert c.events.latest_seq() == 0


def test_failed_job_update_delivers_nothing(deployment, stores, monkeypatch):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)
    request_id = deployment.consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 99)
    monkeypatch.setattr(stores.jobs, "update", _fail)

    with pytest.raises(RuntimeError):
        c.fulfill_job_for_random(request_id, encoded, signature)

    assert deployment.consumer.random_word is None
    monkeypatch.undo()
    assert c.get_job(request_id).state == PENDING
    assert c.fulfill_job_for_random(request_id, encoded, signature).state == FULFILLED
    assert deployment.consumer.random_word == 99


def test_consumer_failure_rolls_back_its_nested_request(deployment):
    c = deployment.coordinator
    c.update_offchain_computer(deployment.oracle_key.address, True, deployment.owner.address)

    class _RequestThenFail(RandomConsumer):
        def on_fulfillment(self, request_id, result):
            super().on_fulfillment(request_id, result)
            self.request_random_number()
            raise RuntimeError("reverted after requesting")

    consumer = _RequestThenFail(c, deployment.subscription_id)
    c.add_consumer(deployment.subscription_id, consumer.address, deployment.owner.address)
    first = consumer.request_random_number()
    encoded, signature = _payload(deployment.oracle_key, 5)

    with pytest.raises(ConsumerDeliveryError):
        c.fulfill_job_for_random(first, encoded, signature)

    assert c.get_job(first).state == PENDING
    assert c.consumer_nonce(consumer.address, deployment.subscription_id) == 2
    assert [j.request_id for j in c.ledger.pending_jobs()] == [first]
