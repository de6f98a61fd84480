"""
Login state store.

CRUD over LoginStateRecord on top of a StateBackend. The store owns the
rules the backends do not know about:

- load() expects zero or one row; if a backend returns several for one
  tracked session, the most recent (highest id) wins and the anomaly is
  reported on the security log.
- One record per tracked session: create() refuses a second one,
  create_or_load() hands back the existing one.
- create() failures are fatal, update() failures are reported as False.
- migrate() is idempotent.
- Records are never deleted.
"""

import logging
from typing import List, Optional

from samlflow.errors import StateLoadFailure, StateWriteFailure
from samlflow.storage.base import DuplicateSessionError, StateBackend
from samlflow.types.login_state import MAX_PROVIDER_ID, LoginStateRecord
from samlflow.utils.logging import get_security_logger

logger = logging.getLogger(__name__)
security_logger = get_security_logger()


class LoginStateStore:
    """Durable login state, one record per tracked session."""

    def __init__(self, backend: StateBackend):
        self.backend = backend

    async def load(self, tracked_session_id: str) -> Optional[LoginStateRecord]:
        """
        Load the record for a tracked session.

        Returns:
            The record, or None when the session has none yet.

        Raises:
            StateLoadFailure: If the backend cannot be queried.
        """
        try:
            rows = await self.backend.fetch_by_session(tracked_session_id)
        except Exception as e:
            logger.error(f"Failed to load login state: {e}")
            raise StateLoadFailure(
                tracked_session_id=tracked_session_id,
                original_error=e,
            ) from e

        if not rows:
            return None
        if len(rows) > 1:
            security_logger.warning(
                f"{len(rows)} login state rows share one tracked session, "
                f"using the most recent",
                extra={"row_count": len(rows), "record_ids": [r.id for r in rows]},
            )
        return max(rows, key=lambda r: r.id or 0)

    async def _insert(self, record: LoginStateRecord) -> int:
        try:
            record_id = await self.backend.insert(record)
        except DuplicateSessionError:
            raise
        except Exception as e:
            logger.error(f"Failed to create login state: {e}")
            raise StateWriteFailure(operation="create", original_error=e) from e
        if not record_id:
            raise StateWriteFailure(
                operation="create",
                internal_message="Backend returned no id for the new login state",
            )
        return record_id

    async def create(self, record: LoginStateRecord) -> int:
        """
        Persist a new record.

        Returns:
            The id assigned by the backend.

        Raises:
            StateWriteFailure: If the backend rejects the write, including
                when the tracked session already has a record.
        """
        try:
            return await self._insert(record)
        except DuplicateSessionError as e:
            logger.error(f"Login state already exists for the tracked session: {e}")
            raise StateWriteFailure(operation="create", original_error=e) from e

    async def create_or_load(self, record: LoginStateRecord) -> LoginStateRecord:
        """
        Persist a new record unless a concurrent request already created one.

        Two first requests on the same host session race to create the
        record; the loser gets the winner's row instead of a duplicate.

        Raises:
            StateWriteFailure: If the backend rejects the write.
            StateLoadFailure: If the existing row cannot be read.
        """
        try:
            return record.with_changes(id=await self._insert(record))
        except DuplicateSessionError as e:
            existing = await self.load(record.tracked_session_id)
            if existing is None:
                raise StateWriteFailure(operation="create", original_error=e) from e
            logger.info("Login state was created by a concurrent request, using it")
            return existing

    async def update(self, record: LoginStateRecord) -> bool:
        """Persist changes to an existing record; False when the write did not happen."""
        if record.id is None:
            logger.warning("Refusing to update a login state that was never created")
            return False
        try:
            touched = await self.backend.update(record)
        except Exception as e:
            logger.error(f"Failed to update login state {record.id}: {e}")
            return False
        if touched != 1:
            logger.warning(f"Update of login state {record.id} touched {touched} rows")
            return False
        return True

    async def update_or_fail(self, record: LoginStateRecord, operation: str) -> None:
        """update() for writes the flow cannot continue without."""
        if not await self.update(record):
            raise StateWriteFailure(
                operation=operation,
                internal_message=f"Login state {record.id} could not be written ({operation})",
            )

    async def migrate(self, old_id: str, new_id: str) -> int:
        """
        Re-key the record of a tracked session after the host rotated its id.

        Returns:
            Number of rows re-keyed. Running the same migration twice
            returns 0 the second time; deciding whether 0 is an error is up
            to the caller.

        Raises:
            StateWriteFailure: If the backend rejects the re-key.
        """
        if old_id == new_id:
            return 0
        try:
            touched = await self.backend.rekey(old_id, new_id)
        except Exception as e:
            logger.error(f"Failed to migrate login state: {e}")
            raise StateWriteFailure(operation="migrate", original_error=e) from e
        if touched:
            logger.info(f"Migrated login state to rotated session id ({touched} row(s))")
        return touched

    async def exists(self, tracked_session_id: str) -> bool:
        return await self.load(tracked_session_id) is not None

    async def query_by_provider(self, idp_id: int) -> List[LoginStateRecord]:
        """
        All records for a provider, newest login first. Read-only.

        Raises:
            StateLoadFailure: If the backend cannot be queried.
        """
        if isinstance(idp_id, bool) or not 0 <= idp_id <= MAX_PROVIDER_ID:
            return []
        try:
            rows = await self.backend.fetch_by_provider(idp_id)
        except Exception as e:
            logger.error(f"Failed to query login states for provider {idp_id}: {e}")
            raise StateLoadFailure(original_error=e) from e
        return sorted(rows, key=lambda r: (r.login_time, r.id or 0), reverse=True)
