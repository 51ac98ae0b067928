from __future__ import annotations

from dataclasses import dataclass

import pytest

from oracle_core.chain.consumer import RandomConsumer
from oracle_core.chain.coordinator import Coordinator, CoordinatorSettings
from oracle_core.crypto.keys import Signer
from oracle_core.ledger.events import JOB_REQUESTED, JobRequested
from oracle_core.storage.memory import MemoryStores


def make_signer(n: int) -> Signer:
    """Deterministic test key: the secp256k1 scalar `n`."""
    return Signer(n.to_bytes(32, "big"))


def job_requested_events(coordinator: Coordinator) -> list[JobRequested]:
    return [JobRequested.from_record(e) for e in coordinator.events.since(0, JOB_REQUESTED)]


@pytest.fixture
def owner() -> Signer:
    return make_signer(1)


@pytest.fixture
def oracle_key() -> Signer:
    return make_signer(2)


@pytest.fixture
def stranger() -> Signer:
    return make_signer(3)


@pytest.fixture
def stores() -> MemoryStores:
    return MemoryStores()


@pytest.fixture
def coordinator(owner: Signer, stores: MemoryStores) -> Coordinator:
    return Coordinator(settings=CoordinatorSettings(owner=owner.address), stores=stores)


@dataclass
class Deployment:
    coordinator: Coordinator
    owner: Signer
    oracle_key: Signer
    subscription_id: int
    consumer: RandomConsumer


@pytest.fixture
def deployment(coordinator: Coordinator, owner: Signer, oracle_key: Signer) -> Deployment:
    """Subscription 0 owned by the owner key, with one registered RandomConsumer."""
    sub_id = coordinator.create_subscription(owner.address)
    consumer = RandomConsumer(coordinator, sub_id)
    coordinator.add_consumer(sub_id, consumer.address, owner.address)
    return Deployment(coordinator=coordinator, owner=owner, oracle_key=oracle_key, subscription_id=sub_id, consumer=consumer)
