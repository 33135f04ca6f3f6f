"""In-memory escrow holds and ledger"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from mutation_kernel.kernel.errors import Conflict, NotFound
from mutation_kernel.services.escrow.models import EscrowHold, LedgerEntry


class InMemoryEscrowRepository:
    """
    Holds and ledger entries behind one re-entrant mutex

    ``locked()`` lets a service run a read-check-write sequence on a hold
    without another request interleaving.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._holds: dict[str, EscrowHold] = {}
        self._ledger: list[LedgerEntry] = []

    @contextmanager
    def locked(self) -> Iterator["InMemoryEscrowRepository"]:
        with self._lock:
            yield self

    def create_hold(self, hold: EscrowHold) -> None:
        with self._lock:
            if hold.escrow_id in self._holds:
                raise Conflict(f"escrow hold {hold.escrow_id} already exists")
            self._holds[hold.escrow_id] = hold

    def update_hold(self, hold: EscrowHold) -> None:
        with self._lock:
            if hold.escrow_id not in self._holds:
                raise NotFound(f"escrow hold {hold.escrow_id} not found")
            self._holds[hold.escrow_id] = hold

    def get_hold(self, escrow_id: str) -> EscrowHold:
        with self._lock:
            hold = self._holds.get(escrow_id)
        if hold is None:
            raise NotFound(f"escrow hold {escrow_id} not found")
        return hold

    def append_entry(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._ledger.append(entry)

    def entries_for_campaign(self, campaign_id: str) -> list[LedgerEntry]:
        with self._lock:
            return [e for e in self._ledger if e.campaign_id == campaign_id]

    def count_holds(self) -> int:
        with self._lock:
            return len(self._holds)
