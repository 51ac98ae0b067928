"""Fulfillment submission channels.

A submitter sends `fulfill_job_for_random(request_id, encoded_result,
signature)` to the coordinator and translates the outcome into the error
taxonomy:

- returns normally when the fulfillment was accepted
- raises the ledger's semantic errors (already fulfilled, unauthorized signer,
  bad signature, unknown request, consumer delivery failed) unchanged
- raises TransientError when the channel itself failed and a retry may succeed
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from oracle_core.chain.coordinator import Coordinator
from oracle_core.errors import (
    AlreadyFulfilledError,
    BadSignatureError,
    ConsumerDeliveryError,
    ContractViolationError,
    TransientError,
    UnauthorizedSignerError,
    UnknownRequestError,
)
from oracle_core.utils import to_hex


class Submitter(ABC):
    @abstractmethod
    def submit(self, request_id: str, encoded_result: bytes, signature: bytes, *, timeout: float) -> None:
        """Submit one fulfillment attempt."""


class LedgerSubmitter(Submitter):
    """Submits directly to an in-process coordinator."""

    def __init__(self, coordinator: Coordinator):
        self._coordinator = coordinator

    def submit(self, request_id: str, encoded_result: bytes, signature: bytes, *, timeout: float) -> None:
        # The oracle enforces the timeout around this call.
        self._coordinator.fulfill_job_for_random(request_id, encoded_result, signature)


def _error_from_payload(request_id: str, status_code: int, payload: dict[str, Any]) -> Exception:
    code = str(payload.get("error", ""))
    message = str(payload.get("message", f"HTTP {status_code}"))
    details = payload.get("details") or {}
    if code == "ALREADY_FULFILLED":
        return AlreadyFulfilledError(request_id, str(details.get("state", "fulfilled")))
    if code == "UNAUTHORIZED_SIGNER":
        return UnauthorizedSignerError(str(details.get("signer", "")))
    if code == "BAD_SIGNATURE":
        return BadSignatureError(message, details=details)
    if code == "UNKNOWN_REQUEST":
        return UnknownRequestError(request_id)
    if code == "CONSUMER_DELIVERY_FAILED":
        return ConsumerDeliveryError(message, details=details)
    return ContractViolationError(message, code=code or f"HTTP_{status_code}", details=details)


class HttpSubmitter(Submitter):
    """Submits through the coordinator HTTP API (`POST /jobs/{request_id}/fulfill`)."""

    def __init__(self, base_url: str, *, client: httpx.Client | None = None):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client()

    def submit(self, request_id: str, encoded_result: bytes, signature: bytes, *, timeout: float) -> None:
        url = f"{self._base_url}/jobs/{request_id}/fulfill"
        body = {"encoded_result": to_hex(encoded_result), "signature": to_hex(signature)}
        try:
            resp = self._client.post(url, json=body, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransientError(f"Fulfillment submission timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Fulfillment channel unavailable: {e}") from e

        if resp.status_code < 300:
            return
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(f"Coordinator returned HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        raise _error_from_payload(request_id, resp.status_code, payload)

    def close(self) -> None:
        self._client.close()
