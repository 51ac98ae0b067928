"""Randomness sources for the oracle.

A source is any zero-argument callable returning an int in the uint256 range.
The oracle bounds each call with a timeout and validates the range when it
encodes the value.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import secrets
import threading
from typing import Callable

from oracle_core.crypto.codec import UINT256_MAX
from oracle_core.errors import PolicyViolationError

RandomnessSource = Callable[[], int]


class SecureRandomSource:
    """Uniform value in [low, high] drawn from the OS CSPRNG."""

    def __init__(self, low: int = 0, high: int = UINT256_MAX):
        if low < 0 or high > UINT256_MAX or low > high:
            raise PolicyViolationError(f"Invalid random range [{low}, {high}]")
        self.low = low
        self.high = high

    def __call__(self) -> int:
        return self.low + secrets.randbelow(self.high - self.low + 1)


class HmacDrbgSource:
    """HMAC-SHA256 chained generator.

    state_{n+1} = HMAC(key, state_n); each call returns the full 256-bit MAC.
    Deterministic for a fixed key and seed, which makes it useful for replaying
    a run; production deployments should seed from os.urandom.
    """

    def __init__(self, key: bytes | None = None, seed: bytes | None = None):
        self._key = key if key is not None else os.urandom(32)
        self._state = seed if seed is not None else os.urandom(32)
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            mac = hmac.new(self._key, self._state, hashlib.sha256).digest()
            self._state = mac
        return int.from_bytes(mac, "big")


def make_source(kind: str, *, low: int = 0, high: int = UINT256_MAX, hmac_key: bytes | None = None) -> RandomnessSource:
    if kind == "secure":
        return SecureRandomSource(low=low, high=high)
    if kind == "hmac_drbg":
        return HmacDrbgSource(key=hmac_key)
    raise PolicyViolationError(f"Unknown randomness source: {kind}")
