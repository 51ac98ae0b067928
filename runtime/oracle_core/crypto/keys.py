"""Oracle signing keys.

The oracle signs with one secp256k1 key at a time. The key is generated once
and persisted next to the configured path so the coordinator owner can
authorize a stable address. Rotation swaps the current key in place; payloads
already signed with the old key are rejected at fulfillment time once the old
address is revoked.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

from coincurve import PrivateKey

from oracle_core.crypto import codec

logger = logging.getLogger(__name__)


class Signer:
    def __init__(self, private_key: PrivateKey | bytes):
        self._sk = private_key if isinstance(private_key, PrivateKey) else PrivateKey(bytes(private_key))
        self.address = codec.address_of(self._sk)

    @classmethod
    def generate(cls) -> "Signer":
        return cls(PrivateKey())

    @classmethod
    def from_hex(cls, secret_hex: str) -> "Signer":
        return cls(bytes.fromhex(secret_hex.strip().removeprefix("0x")))

    def sign_digest(self, digest: bytes) -> bytes:
        return codec.sign(digest, self._sk)

    def secret_hex(self) -> str:
        return self._sk.secret.hex()

    def __repr__(self) -> str:
        return f"Signer(address={self.address})"


def load_or_create_key(key_path: Path) -> Signer:
    """Load an existing secp256k1 key or generate a new persistent one."""
    if key_path.exists():
        return Signer.from_hex(key_path.read_text(encoding="utf-8"))

    signer = Signer.generate()
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(signer.secret_hex(), encoding="utf-8")
    os.chmod(str(key_path), 0o600)
    logger.info("oracle_key_created", extra={"event": "oracle_key_created", "signer": signer.address})
    return signer


class KeyProvider:
    """Holds the process's currently configured signing key."""

    def __init__(self, signer: Signer):
        self._lock = threading.Lock()
        self._signer = signer

    def current(self) -> Signer:
        with self._lock:
            return self._signer

    def rotate(self, signer: Signer) -> Signer:
        with self._lock:
            previous, self._signer = self._signer, signer
        logger.info(
            "oracle_key_rotated",
            extra={"event": "oracle_key_rotated", "signer": signer.address, "previous_signer": previous.address},
        )
        return previous
