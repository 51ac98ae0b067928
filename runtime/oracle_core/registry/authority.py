"""Offchain computer authority: which signer addresses may fulfill jobs.

Only the coordinator owner may change the set. Lookups are read at
fulfillment time, so a revocation applies to every fulfillment that has not
been accepted yet, including payloads that were signed before it.
"""

from __future__ import annotations

import logging
import threading

from oracle_core.errors import UnauthorizedError
from oracle_core.storage.interfaces import AuthorityStore, ComputerRecord
from oracle_core.utils import normalize_address, utcnow

logger = logging.getLogger(__name__)


class OffchainComputerAuthority:
    def __init__(self, *, owner: str, store: AuthorityStore, lock: threading.RLock | None = None):
        self.owner = normalize_address(owner)
        self._store = store
        self._lock = lock or threading.RLock()

    def set_authorized(self, address: str, authorized: bool, caller: str) -> bool:
        """Set an address's authorization. Returns False when it already had that value."""
        address = normalize_address(address)
        if normalize_address(caller) != self.owner:
            raise UnauthorizedError("Only the coordinator owner may update offchain computers", details={"caller": caller})
        with self._lock:
            current = self._store.get(address)
            if current is not None and current.authorized == bool(authorized):
                return False
            if current is None and not authorized:
                return False
            self._store.put(ComputerRecord(address=address, authorized=bool(authorized), updated_at=utcnow()))
        logger.info(
            "offchain_computer_updated",
            extra={"event": "offchain_computer_updated", "signer": address, "state": "authorized" if authorized else "revoked"},
        )
        return True

    def is_authorized(self, address: str) -> bool:
        rec = self._store.get(normalize_address(address))
        return rec is not None and rec.authorized

    def authorized_addresses(self) -> list[str]:
        return list(self._store.list_authorized())
