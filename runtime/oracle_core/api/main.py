"""FastAPI surface for the randomness coordinator."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from oracle_core.api.auth import CALLER_SIGNATURE_HEADER, ReplayGuard, call_digest, check_issued_at
from oracle_core.chain.coordinator import Coordinator, Stores
from oracle_core.config.logging import apply_logging_config
from oracle_core.config.settings import RuntimeConfig, default_config_paths, load_runtime_config
from oracle_core.crypto import codec
from oracle_core.crypto.keys import KeyProvider, load_or_create_key
from oracle_core.errors import (
    ConflictError,
    ContractViolationError,
    NotFoundError,
    PolicyViolationError,
    SchemaValidationError,
    TransientError,
    UnauthorizedError,
)
from oracle_core.oracle.sources import make_source
from oracle_core.oracle.submitters import HttpSubmitter, LedgerSubmitter, Submitter
from oracle_core.oracle.worker import OracleCoordinator
from oracle_core.registry.subscriptions import Subscription
from oracle_core.scheduler.runner import Scheduler
from oracle_core.storage.interfaces import JobRecord
from oracle_core.storage.memory import MemoryStores
from oracle_core.storage.sqlite import SQLiteStores
from oracle_core.utils import format_rfc3339, from_hex, normalize_address, parse_rfc3339, utcnow
from oracle_core.validation.schema_validator import SchemaValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppComponents:
    config: RuntimeConfig
    coordinator: Coordinator
    schema_validator: SchemaValidator
    oracle: OracleCoordinator | None
    scheduler: Scheduler | None
    submitter: Submitter | None
    replay_guard: ReplayGuard


def _env_path(name: str) -> Path | None:
    v = os.environ.get(name)
    if not v:
        return None
    return Path(v)


def _build_stores(config: RuntimeConfig) -> Stores:
    if config.storage.driver == "memory":
        return MemoryStores()
    return SQLiteStores(config.storage.sqlite_path)


def build_components(
    runtime_config_path: Path | None = None,
    logging_config_path: Path | None = None,
    *,
    stores: Stores | None = None,
) -> AppComponents:
    default_runtime, default_logging = default_config_paths()
    runtime_cfg_path = runtime_config_path or _env_path("ORACLE_RUNTIME_CONFIG") or default_runtime
    logging_cfg_path = logging_config_path or _env_path("ORACLE_LOGGING_CONFIG") or default_logging

    config = load_runtime_config(runtime_cfg_path)
    apply_logging_config(logging_cfg_path)

    schema_validator = SchemaValidator.load_from_dir()
    coordinator = Coordinator(settings=config.coordinator, stores=stores or _build_stores(config))

    oracle: OracleCoordinator | None = None
    scheduler: Scheduler | None = None
    submitter: Submitter | None = None
    if config.oracle.enabled:
        keys = KeyProvider(load_or_create_key(config.oracle.key_path))
        if config.oracle.submit_url:
            submitter = HttpSubmitter(config.oracle.submit_url)
        else:
            submitter = LedgerSubmitter(coordinator)
        source = make_source(config.oracle.source, low=config.oracle.value_min, high=config.oracle.value_max)
        oracle = OracleCoordinator(submitter=submitter, source=source, keys=keys, settings=config.oracle.settings)
        scheduler = Scheduler(
            config=config.scheduler,
            events=coordinator.events,
            oracle=oracle,
            pending_jobs=coordinator.ledger.pending_jobs,
        )
        logger.info(
            "oracle_configured",
            extra={"event": "oracle_configured", "signer": keys.current().address, "state": "authorized" if coordinator.authority.is_authorized(keys.current().address) else "unauthorized"},
        )

    return AppComponents(
        config=config,
        coordinator=coordinator,
        schema_validator=schema_validator,
        oracle=oracle,
        scheduler=scheduler,
        submitter=submitter,
        replay_guard=ReplayGuard(timedelta(seconds=config.service.auth_max_skew_seconds)),
    )


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, SchemaValidationError):
        return {
            "error": err.code,
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, NotFoundError):
        return {
            "error": err.code,
            "message": str(err),
            "details": {"resource_type": err.resource_type, "resource_id": err.resource_id},
        }
    if isinstance(err, (ContractViolationError, PolicyViolationError, ConflictError)):
        return {"error": err.code, "message": str(err), "details": err.details}
    if isinstance(err, TransientError):
        return {"error": err.code, "message": str(err)}
    return {"error": "INTERNAL", "message": str(err)}


app = FastAPI(title="Randomness Oracle Coordinator", version="0.1.0")


@app.on_event("startup")
def _startup() -> None:
    # Fail closed at startup if config, schemas or stores cannot be loaded.
    components = build_components()
    app.state.components = components
    if components.scheduler is not None and components.config.scheduler.enabled:
        components.scheduler.start_background()
    logger.info("coordinator_started", extra={"event": "coordinator_started", "owner": components.coordinator.owner})


@app.on_event("shutdown")
def _shutdown() -> None:
    components: AppComponents | None = getattr(app.state, "components", None)
    if components is None:
        return
    if components.scheduler is not None:
        components.scheduler.stop()
    if components.oracle is not None:
        components.oracle.shutdown(wait=False)
    if isinstance(components.submitter, HttpSubmitter):
        components.submitter.close()


@app.exception_handler(SchemaValidationError)
def _schema_validation_handler(_req, exc: SchemaValidationError):
    return JSONResponse(status_code=422, content=_error_payload(exc))


@app.exception_handler(PolicyViolationError)
def _policy_violation_handler(_req, exc: PolicyViolationError):
    return JSONResponse(status_code=403, content=_error_payload(exc))


@app.exception_handler(ContractViolationError)
def _contract_violation_handler(_req, exc: ContractViolationError):
    return JSONResponse(status_code=400, content=_error_payload(exc))


@app.exception_handler(ConflictError)
def _conflict_handler(_req, exc: ConflictError):
    return JSONResponse(status_code=409, content=_error_payload(exc))


@app.exception_handler(NotFoundError)
def _not_found_handler(_req, exc: NotFoundError):
    return JSONResponse(status_code=404, content=_error_payload(exc))


@app.exception_handler(TransientError)
def _transient_handler(_req, exc: TransientError):
    return JSONResponse(status_code=503, content=_error_payload(exc))


@app.exception_handler(Exception)
def _unhandled_handler(_req, exc: Exception):
    logger.exception("unhandled_error", extra={"event": "unhandled_error"})
    return JSONResponse(status_code=500, content=_error_payload(exc))


def _components() -> AppComponents:
    return app.state.components


def _parse_body(raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8") or "null")
    except (UnicodeDecodeError, ValueError) as e:
        raise ContractViolationError(f"Request body is not valid JSON: {e}", code="INVALID_JSON") from e


async def _signed_body(request: Request, kind: str) -> tuple[dict[str, Any], str]:
    """Validate a signed call body and return it with the recovered caller address.

    The signature covers method, path and raw body (see `oracle_core.api.auth`),
    and each signed call is accepted once within its `issued_at` window.
    """
    comps = _components()
    raw = await request.body()
    doc = _parse_body(raw)
    comps.schema_validator.validate(kind, doc)

    header = request.headers.get(CALLER_SIGNATURE_HEADER)
    if not header:
        raise UnauthorizedError(f"Missing {CALLER_SIGNATURE_HEADER} header")
    digest = call_digest(request.method, request.url.path, raw)
    caller = codec.verify(digest, from_hex(header, field=CALLER_SIGNATURE_HEADER))

    try:
        issued_at = parse_rfc3339(str(doc["issued_at"]))
    except ValueError as e:
        raise ContractViolationError(f"issued_at is not an RFC 3339 timestamp: {e}", code="INVALID_TIMESTAMP") from e
    now = utcnow()
    check_issued_at(issued_at, timedelta(seconds=comps.config.service.auth_max_skew_seconds), now=now)
    comps.replay_guard.accept(caller, digest, issued_at, now=now)
    return doc, caller


async def _unsigned_body(request: Request, kind: str) -> dict[str, Any]:
    doc = _parse_body(await request.body())
    _components().schema_validator.validate(kind, doc)
    return doc


def _subscription_view(sub: Subscription) -> dict[str, Any]:
    return {"subscription_id": sub.subscription_id, "owner": sub.owner, "consumers": sorted(sub.consumers)}


def _job_view(job: JobRecord) -> dict[str, Any]:
    return {
        "request_id": job.request_id,
        "consumer": job.consumer,
        "subscription_id": job.subscription_id,
        # uint256; JSON numbers lose precision past 2**53.
        "nonce": str(job.nonce),
        "state": job.state,
        "created_at": format_rfc3339(job.created_at),
        "updated_at": format_rfc3339(job.updated_at),
        "signer": job.signer,
        "result": job.result,
        "expiry_reason": job.expiry_reason,
    }


@app.get("/health")
def health() -> dict[str, Any]:
    """Health check. Returns 200 once config, schemas and stores are loaded."""
    comps = _components()
    return {"status": "ok", "owner": comps.coordinator.owner, "oracle": comps.oracle is not None}


@app.post("/subscriptions")
async def create_subscription(request: Request) -> dict[str, Any]:
    _, caller = await _signed_body(request, "SignedCall")
    coordinator = _components().coordinator
    subscription_id = coordinator.create_subscription(caller)
    return {"subscription": _subscription_view(coordinator.sub_id_to_subscription(subscription_id))}


@app.get("/subscriptions/{subscription_id}")
def get_subscription(subscription_id: int) -> dict[str, Any]:
    return {"subscription": _subscription_view(_components().coordinator.sub_id_to_subscription(subscription_id))}


@app.post("/subscriptions/{subscription_id}/consumers")
async def add_consumer(subscription_id: int, request: Request) -> dict[str, Any]:
    doc, caller = await _signed_body(request, "ConsumerChange")
    coordinator = _components().coordinator
    consumer = normalize_address(doc["consumer"])
    coordinator.add_consumer(subscription_id, consumer, caller)
    return {
        "subscription": _subscription_view(coordinator.sub_id_to_subscription(subscription_id)),
        "consumer": consumer,
        "nonce": str(coordinator.consumer_nonce(consumer, subscription_id)),
    }


@app.delete("/subscriptions/{subscription_id}/consumers/{address}")
async def remove_consumer(subscription_id: int, address: str, request: Request) -> dict[str, Any]:
    _, caller = await _signed_body(request, "SignedCall")
    coordinator = _components().coordinator
    coordinator.remove_consumer(subscription_id, address, caller)
    return {"subscription": _subscription_view(coordinator.sub_id_to_subscription(subscription_id))}


@app.get("/subscriptions/{subscription_id}/consumers/{address}/nonce")
def consumer_nonce(subscription_id: int, address: str) -> dict[str, Any]:
    coordinator = _components().coordinator
    coordinator.sub_id_to_subscription(subscription_id)
    consumer = normalize_address(address)
    return {"subscription_id": subscription_id, "consumer": consumer, "nonce": str(coordinator.consumer_nonce(consumer, subscription_id))}


@app.put("/offchain-computers/{address}")
async def update_offchain_computer(address: str, request: Request) -> dict[str, Any]:
    doc, caller = await _signed_body(request, "OffchainComputerUpdate")
    authorized = bool(doc["authorized"])
    changed = _components().coordinator.update_offchain_computer(address, authorized, caller)
    return {"address": normalize_address(address), "authorized": authorized, "changed": changed}


@app.get("/offchain-computers")
def list_offchain_computers() -> dict[str, Any]:
    return {"authorized": _components().coordinator.authority.authorized_addresses()}


@app.post("/jobs")
async def request_job(request: Request) -> dict[str, Any]:
    doc, caller = await _signed_body(request, "JobRequestCreate")
    coordinator = _components().coordinator
    request_id = coordinator.request_job(caller, int(doc["subscription_id"]))
    return {"job": _job_view(coordinator.get_job(request_id))}


@app.get("/jobs/{request_id}")
def get_job(request_id: str) -> dict[str, Any]:
    return {"job": _job_view(_components().coordinator.get_job(request_id))}


@app.post("/jobs/{request_id}/fulfill")
async def fulfill_job(request_id: str, request: Request) -> dict[str, Any]:
    # Not caller-signed: the payload signature identifies the offchain computer.
    doc = await _unsigned_body(request, "FulfillmentSubmission")
    job = _components().coordinator.fulfill_job_for_random(request_id, doc["encoded_result"], doc["signature"])
    return {"job": _job_view(job)}


@app.post("/jobs/{request_id}/expire")
async def expire_job(request_id: str, request: Request) -> dict[str, Any]:
    doc, caller = await _signed_body(request, "SignedCall")
    job = _components().coordinator.expire_job(request_id, caller, doc.get("reason") or "expired_by_owner")
    return {"job": _job_view(job)}


def main() -> None:
    runtime_path = _env_path("ORACLE_RUNTIME_CONFIG") or default_config_paths()[0]
    service = load_runtime_config(runtime_path).service
    uvicorn.run(app, host=service.host, port=service.port)


if __name__ == "__main__":
    main()
