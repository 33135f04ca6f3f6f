"""In-memory payout repository"""

import threading

from mutation_kernel.kernel.errors import Conflict, NotFound
from mutation_kernel.services.payout.models import Payout


class InMemoryPayoutRepository:
    """Payouts keyed by id, guarded by one mutex"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._payouts: dict[str, Payout] = {}

    def create(self, payout: Payout) -> None:
        with self._lock:
            if payout.payout_id in self._payouts:
                raise Conflict(f"payout {payout.payout_id} already exists")
            self._payouts[payout.payout_id] = payout

    def update(self, payout: Payout) -> None:
        with self._lock:
            if payout.payout_id not in self._payouts:
                raise NotFound(f"payout {payout.payout_id} not found")
            self._payouts[payout.payout_id] = payout

    def get(self, payout_id: str) -> Payout:
        with self._lock:
            payout = self._payouts.get(payout_id)
        if payout is None:
            raise NotFound(f"payout {payout_id} not found")
        return payout

    def list(
        self, user_id: str | None = None, limit: int = 20, offset: int = 0
    ) -> tuple[list[Payout], int]:
        """Newest first; returns (page, total matching)"""
        with self._lock:
            items = [p for p in self._payouts.values() if not user_id or p.user_id == user_id]
        items.sort(key=lambda p: p.created_at, reverse=True)
        return items[offset : offset + limit], len(items)

    def count(self) -> int:
        with self._lock:
            return len(self._payouts)
