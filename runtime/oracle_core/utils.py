"""Small utility helpers used across the coordinator and the oracle."""

from __future__ import annotations

import binascii
import json
from datetime import datetime, timezone
from typing import Any

from oracle_core.errors import ContractViolationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_rfc3339(dt: str) -> datetime:
    """Parse RFC3339-ish timestamps used by JSON Schema date-time.

    Python's datetime.fromisoformat does not accept trailing "Z", so we normalize.
    """
    s = dt.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    parsed = datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        # Fail closed: require timezone-aware timestamps.
        raise ValueError("date-time must be timezone-aware (include Z or offset)")
    return parsed.astimezone(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def to_hex(b: bytes) -> str:
    return "0x" + binascii.hexlify(bytes(b)).decode("ascii")


def from_hex(s: str | bytes, *, field: str = "value") -> bytes:
    """Parse 0x-prefixed (or bare) hex into bytes."""
    if isinstance(s, (bytes, bytearray)):
        return bytes(s)
    if not isinstance(s, str):
        raise ContractViolationError(f"{field} must be a hex string", code="INVALID_HEX")
    h = s.strip().lower()
    if h.startswith("0x"):
        h = h[2:]
    if len(h) % 2:
        raise ContractViolationError(f"{field} has odd hex length", code="INVALID_HEX")
    try:
        return binascii.unhexlify(h)
    except binascii.Error as e:
        raise ContractViolationError(f"{field} is not valid hex: {e}", code="INVALID_HEX") from e


def normalize_address(address: str | bytes) -> str:
    """Return a 20-byte address as lower-case 0x hex. Checksum casing is accepted and dropped."""
    raw = from_hex(address, field="address")
    if len(raw) != 20:
        raise ContractViolationError(f"address must be 20 bytes (got {len(raw)})", code="INVALID_ADDRESS")
    return to_hex(raw)


def normalize_request_id(request_id: str | bytes) -> str:
    raw = from_hex(request_id, field="request_id")
    if len(raw) != 32:
        raise ContractViolationError(f"request_id must be 32 bytes (got {len(raw)})", code="INVALID_REQUEST_ID")
    return to_hex(raw)
