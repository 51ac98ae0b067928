#!/usr/bin/env python3
"""Walk one request through the coordinator in memory and print each outcome.

Owner key 0x..01 creates subscription 0 and adds a consumer; an oracle key
that is not yet authorized signs 4242 and is rejected; after the owner
authorizes it the same payload is accepted and a second submission is
refused as already fulfilled.
"""
from __future__ import annotations

import sys
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def main() -> int:
    repo = _repo_root()
    sys.path.insert(0, str(repo / "runtime"))

    from oracle_core.chain.consumer import RandomConsumer
    from oracle_core.chain.coordinator import Coordinator, CoordinatorSettings
    from oracle_core.crypto import codec
    from oracle_core.crypto.keys import Signer
    from oracle_core.errors import AlreadyFulfilledError, UnauthorizedSignerError
    from oracle_core.storage.memory import MemoryStores

    owner = Signer((1).to_bytes(32, "big"))
    oracle = Signer((2).to_bytes(32, "big"))

    coordinator = Coordinator(settings=CoordinatorSettings(owner=owner.address), stores=MemoryStores())
    sub_id = coordinator.create_subscription(owner.address)
    consumer = RandomConsumer(coordinator, sub_id)
    coordinator.add_consumer(sub_id, consumer.address, owner.address)
    print(f"subscription={sub_id} consumer={consumer.address} nonce={coordinator.consumer_nonce(consumer.address, sub_id)}")

    request_id = consumer.request_random_number()
    print(f"request_id={request_id} nonce={coordinator.consumer_nonce(consumer.address, sub_id)}")

    encoded = codec.encode(4242)
    signature = oracle.sign_digest(codec.hash(encoded))

    failures = 0
    try:
        coordinator.fulfill_job_for_random(request_id, encoded, signature)
        print("unauthorized_fulfill=ACCEPTED")
        failures += 1
    except UnauthorizedSignerError as e:
        print(f"unauthorized_fulfill=REJECTED signer={e.signer}")

    coordinator.update_offchain_computer(oracle.address, True, owner.address)
    job = coordinator.fulfill_job_for_random(request_id, encoded, signature)
    print(f"authorized_fulfill={job.state} random_word={consumer.random_word}")
    if consumer.random_word != 4242:
        failures += 1

    try:
        coordinator.fulfill_job_for_random(request_id, encoded, signature)
        print("second_fulfill=ACCEPTED")
        failures += 1
    except AlreadyFulfilledError:
        print("second_fulfill=ALREADY_FULFILLED")

    print("scenario=PASS" if failures == 0 else "scenario=FAIL")
    return 0 if failures == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
