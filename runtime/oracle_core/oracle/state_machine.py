"""Oracle task lifecycle state machine.

Canonical lifecycle:
observed -> computing -> signed -> submitted -> confirmed | failed

Notes:
- submitted -> signed happens when a submission attempt fails transiently and
  the same signed payload is queued for another attempt.
- failed -> observed is the operator re-drive after remediation.
- confirmed is terminal. An `already fulfilled` answer from the ledger also
  ends in confirmed because some oracle instance got the job done.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from oracle_core.errors import ConflictError

OBSERVED = "observed"
COMPUTING = "computing"
SIGNED = "signed"
SUBMITTED = "submitted"
CONFIRMED = "confirmed"
FAILED = "failed"

_ALLOWED: dict[str, set[str]] = {
    OBSERVED: {COMPUTING, FAILED},
    COMPUTING: {SIGNED, FAILED},
    SIGNED: {SUBMITTED, FAILED},
    SUBMITTED: {CONFIRMED, SIGNED, FAILED},
    CONFIRMED: set(),
    FAILED: {OBSERVED},
}


@dataclass(frozen=True)
class OracleTask:
    request_id: str
    consumer: str
    subscription_id: int
    state: str
    updated_at: datetime
    attempts: int = 0
    value: int | None = None
    encoded_result: bytes | None = None
    signature: bytes | None = None
    signer: str | None = None
    error_code: str | None = None
    error: str | None = None


def transition(task: OracleTask, new_state: str, now: datetime, **changes) -> OracleTask:
    """Return a copy of the task in `new_state`, with optional field changes."""
    if new_state == task.state:
        return replace(task, updated_at=now, **changes)
    if new_state not in _ALLOWED.get(task.state, set()):
        raise ConflictError(f"Invalid oracle task transition: {task.state} -> {new_state}", details={"request_id": task.request_id})
    return replace(task, state=new_state, updated_at=now, **changes)
