"""
Abstract storage backend for login state records.

Backends only move rows; ordering rules, duplicate handling and error
translation live in LoginStateStore. Backends signal failure by raising
StorageBackendError (or letting their driver's exception propagate, which
the store wraps).
"""

from abc import ABC, abstractmethod
from typing import List

from samlflow.types.login_state import LoginStateRecord


class StorageBackendError(Exception):
    """Raised by a backend when the underlying storage rejects an operation."""


class DuplicateSessionError(StorageBackendError):
    """Raised when a write would give a second row the same tracked session id."""


class StateBackend(ABC):
    """Row-level operations over login state records."""

    @abstractmethod
    async def fetch_by_session(self, tracked_session_id: str) -> List[LoginStateRecord]:
        """All rows carrying the tracked session id, in insertion order."""

    @abstractmethod
    async def insert(self, record: LoginStateRecord) -> int:
        """
        Insert a record and return its new id.

        Raises DuplicateSessionError when a row already carries the
        tracked session id.
        """

    @abstractmethod
    async def update(self, record: LoginStateRecord) -> int:
        """Overwrite the row with record.id; returns the number of rows touched."""

    @abstractmethod
    async def rekey(self, old_id: str, new_id: str) -> int:
        """
        Move rows from one tracked session id to another; returns rows touched.

        Raises DuplicateSessionError when the new id is already taken.
        """

    @abstractmethod
    async def fetch_by_provider(self, idp_id: int) -> List[LoginStateRecord]:
        """All rows for a provider, newest login time first."""

    async def close(self) -> None:
        """Release backend resources."""
