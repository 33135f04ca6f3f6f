"""In-memory export request repository"""

import threading

from mutation_kernel.kernel.errors import Conflict, NotFound
from mutation_kernel.services.portability.models import ExportRequest


class InMemoryExportRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, ExportRequest] = {}

    def create(self, row: ExportRequest) -> None:
        with self._lock:
            if row.request_id in self._rows:
                raise Conflict(f"export request {row.request_id} already exists")
            self._rows[row.request_id] = row

    def update(self, row: ExportRequest) -> None:
        with self._lock:
            if row.request_id not in self._rows:
                raise NotFound(f"export request {row.request_id} not found")
            self._rows[row.request_id] = row

    def get(self, request_id: str) -> ExportRequest:
        with self._lock:
            row = self._rows.get(request_id)
        if row is None:
            raise NotFound(f"export request {request_id} not found")
        return row

    def list_by_user(self, user_id: str, limit: int) -> list[ExportRequest]:
        """Newest first"""
        with self._lock:
            rows = [r for r in self._rows.values() if r.user_id == user_id]
        rows.sort(key=lambda r: r.requested_at, reverse=True)
        return rows[:limit]

    def count(self) -> int:
        with self._lock:
            return len(self._rows)
