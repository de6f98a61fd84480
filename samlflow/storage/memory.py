"""
In-memory state backend.

Used when no database is configured and throughout the tests. State is lost
on restart and is not shared between worker processes. Tracked session ids
are unique, as they are in the Postgres table.
"""

import asyncio
from typing import Dict, List

from samlflow.storage.base import DuplicateSessionError, StateBackend, StorageBackendError
from samlflow.types.login_state import LoginStateRecord


class InMemoryStateBackend(StateBackend):
    """Keeps records in a dict keyed by record id."""

    def __init__(self):
        self._rows: Dict[int, LoginStateRecord] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def fetch_by_session(self, tracked_session_id: str) -> List[LoginStateRecord]:
        return [
            row for _, row in sorted(self._rows.items())
            if row.tracked_session_id == tracked_session_id
        ]

    def _taken(self, tracked_session_id: str) -> bool:
        return any(row.tracked_session_id == tracked_session_id for row in self._rows.values())

    async def insert(self, record: LoginStateRecord) -> int:
        async with self._lock:
            if self._taken(record.tracked_session_id):
                raise DuplicateSessionError("A login state already exists for this tracked session")
            record_id = self._next_id
            self._next_id += 1
            self._rows[record_id] = record.with_changes(id=record_id)
            return record_id

    async def update(self, record: LoginStateRecord) -> int:
        if record.id is None:
            raise StorageBackendError("Cannot update a record that was never inserted")
        async with self._lock:
            if record.id not in self._rows:
                return 0
            self._rows[record.id] = record
            return 1

    async def rekey(self, old_id: str, new_id: str) -> int:
        async with self._lock:
            moving = [
                record_id for record_id, row in self._rows.items()
                if row.tracked_session_id == old_id
            ]
            if moving and self._taken(new_id):
                raise DuplicateSessionError("Cannot re-key onto a tracked session that has a login state")
            for record_id in moving:
                self._rows[record_id] = self._rows[record_id].with_changes(tracked_session_id=new_id)
            return len(moving)

    async def fetch_by_provider(self, idp_id: int) -> List[LoginStateRecord]:
        rows = [row for row in self._rows.values() if row.idp_id == idp_id]
        rows.sort(key=lambda r: (r.login_time, r.id or 0), reverse=True)
        return rows

    def __len__(self) -> int:
        return len(self._rows)
