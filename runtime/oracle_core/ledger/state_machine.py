"""Job request lifecycle state machine.

Canonical lifecycle:
pending -> fulfilled | expired

Notes:
- Jobs are never deleted; terminal records stay to block replays.
- Any transition out of a terminal state is rejected with AlreadyFulfilledError,
  which is what a second fulfillment attempt observes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from oracle_core.errors import AlreadyFulfilledError, ConflictError, ContractViolationError
from oracle_core.storage.interfaces import JobRecord

PENDING = "pending"
FULFILLED = "fulfilled"
EXPIRED = "expired"

_TERMINAL_STATES = {FULFILLED, EXPIRED}

_ALLOWED: dict[str, set[str]] = {
    PENDING: {FULFILLED, EXPIRED},
    FULFILLED: set(),
    EXPIRED: set(),
}


@dataclass(frozen=True)
class TransitionRequest:
    new_state: str
    now: datetime
    signer: str | None = None
    result: str | None = None
    expiry_reason: str | None = None


def is_terminal(state: str) -> bool:
    return state in _TERMINAL_STATES


def apply_transition(job: JobRecord, req: TransitionRequest) -> JobRecord:
    """Return a new JobRecord with the requested state applied."""
    if is_terminal(job.state):
        raise AlreadyFulfilledError(job.request_id, job.state)

    allowed = _ALLOWED.get(job.state)
    if allowed is None or req.new_state not in allowed:
        raise ConflictError(f"Invalid job state transition: {job.state} -> {req.new_state}")

    if req.new_state == FULFILLED:
        if not req.signer or req.result is None:
            raise ContractViolationError("signer and result are required for fulfilled jobs", code="MISSING_FULFILLMENT")
        return replace(job, state=FULFILLED, updated_at=req.now, signer=req.signer, result=req.result)

    if not req.expiry_reason:
        raise ContractViolationError("expiry_reason is required for expired jobs", code="MISSING_EXPIRY_REASON")
    return replace(job, state=EXPIRED, updated_at=req.now, expiry_reason=req.expiry_reason)
