"""Caller authentication for signed API calls.

A signed call binds the HTTP method, the request path and the raw body:

  digest = keccak256(METHOD || " " || path || "\\n" || body)

The caller signs that digest with EIP-191 and sends the signature in the
X-Caller-Signature header; the recovered address is the caller. Because the
path carries the call's target (subscription id, consumer, computer address,
request id) a captured signature cannot be pointed at another target or
another endpoint.

Within the `issued_at` window a digest is accepted once. The replay guard
remembers accepted digests until their window closes.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

from oracle_core.crypto import codec
from oracle_core.errors import ReplayedCallError, UnauthorizedError
from oracle_core.utils import to_hex, utcnow

CALLER_SIGNATURE_HEADER = "X-Caller-Signature"


def call_digest(method: str, path: str, body: bytes) -> bytes:
    return codec.hash(method.upper().encode("ascii") + b" " + path.encode("utf-8") + b"\n" + bytes(body))


def check_issued_at(issued_at: datetime, max_skew: timedelta, *, now: datetime | None = None) -> None:
    now = now or utcnow()
    if abs(now - issued_at) > max_skew:
        raise UnauthorizedError(
            "Signed call is outside the accepted time window",
            details={"issued_at": issued_at.isoformat(), "max_skew_seconds": max_skew.total_seconds()},
        )


class ReplayGuard:
    """Accepts each signed call digest at most once while its window is open.

    Keys are (caller, call digest), not signature bytes, so a re-encoded
    signature over the same call is still a replay.
    """

    def __init__(self, max_skew: timedelta):
        self._max_skew = max_skew
        self._lock = threading.Lock()
        self._seen: dict[tuple[str, bytes], datetime] = {}

    def accept(self, caller: str, digest: bytes, issued_at: datetime, *, now: datetime | None = None) -> None:
        now = now or utcnow()
        with self._lock:
            self._prune(now)
            key = (caller, digest)
            if key in self._seen:
                raise ReplayedCallError("Signed call was already used", details={"caller": caller, "call": to_hex(digest)})
            self._seen[key] = issued_at + self._max_skew

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def _prune(self, now: datetime) -> None:
        expired = [k for k, until in self._seen.items() if until < now]
        for k in expired:
            del self._seen[k]
