"""Coordinator and oracle error types.

The coordinator is fail-closed: an operation either applies completely or
raises one of these errors and leaves no partial state behind. The API layer
maps each type to an HTTP response with a stable `error` code, and the HTTP
submitter maps those codes back to the same types.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class OracleRuntimeError(Exception):
    """Base class for coordinator and oracle errors."""

    code = "INTERNAL"


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(OracleRuntimeError):
    code = "SCHEMA_VALIDATION_ERROR"

    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))")


class NotFoundError(OracleRuntimeError):
    code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class UnknownRequestError(NotFoundError):
    code = "UNKNOWN_REQUEST"

    def __init__(self, request_id: str):
        super().__init__("JobRequest", request_id)


class ConflictError(OracleRuntimeError):
    code = "CONFLICT"

    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class AlreadyFulfilledError(ConflictError):
    code = "ALREADY_FULFILLED"

    def __init__(self, request_id: str, state: str):
        self.request_id = request_id
        self.state = state
        super().__init__(f"Job {request_id} is not pending (state={state})", details={"state": state})


class NonceOverflowError(ConflictError):
    code = "NONCE_OVERFLOW"


class ConsumerDeliveryError(ConflictError):
    """The consumer callback raised; the job stays pending so a retry can succeed."""

    code = "CONSUMER_DELIVERY_FAILED"


class PolicyViolationError(OracleRuntimeError):
    code = "POLICY_VIOLATION"

    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class UnauthorizedError(PolicyViolationError):
    code = "UNAUTHORIZED"


class ReplayedCallError(UnauthorizedError):
    code = "REPLAYED_CALL"


class NotAConsumerError(PolicyViolationError):
    code = "NOT_A_CONSUMER"


class UnauthorizedSignerError(PolicyViolationError):
    code = "UNAUTHORIZED_SIGNER"

    def __init__(self, signer: str):
        self.signer = signer
        super().__init__(f"Signer is not an authorized offchain computer: {signer}", details={"signer": signer})


class ContractViolationError(OracleRuntimeError):
    code = "CONTRACT_VIOLATION"

    def __init__(self, message: str, code: str = "CONTRACT_VIOLATION", details: Any | None = None):
        self.code = code
        self.details = details
        super().__init__(message)


class BadSignatureError(ContractViolationError):
    def __init__(self, message: str, details: Any | None = None):
        super().__init__(message, code="BAD_SIGNATURE", details=details)


class TransientError(OracleRuntimeError):
    """Submission channel or collaborator temporarily unavailable; safe to retry."""

    code = "TRANSIENT"


# Errors that reflect a final decision by the ledger. The oracle never retries these.
SEMANTIC_REJECTIONS: tuple[type[OracleRuntimeError], ...] = (
    AlreadyFulfilledError,
    UnauthorizedSignerError,
    BadSignatureError,
    UnknownRequestError,
    ConsumerDeliveryError,
)
