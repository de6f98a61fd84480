"""
Async Postgres state backend.

Connects directly with asyncpg. The table is created on first use when it
does not exist yet; records are never deleted by the login flow. A unique
index keeps one row per tracked session id.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import asyncpg

from samlflow.storage.base import DuplicateSessionError, StateBackend
from samlflow.types.login_state import LoginStateRecord

logger = logging.getLogger(__name__)

TABLE = "samlflow_login_states"

COLUMNS = (
    "tracked_session_id",
    "host_session_name",
    "user_id",
    "user_name",
    "host_authenticated",
    "external_authenticated",
    "phase",
    "idp_id",
    "enforce_logoff",
    "excluded_path",
    "excluded_action",
    "location",
    "login_time",
    "last_activity_time",
    "pending_response_blob",
    "pending_request_blob",
    "pending_request_id",
)

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    id                     BIGSERIAL PRIMARY KEY,
    tracked_session_id     VARCHAR(255) NOT NULL,
    host_session_name      VARCHAR(255) NOT NULL DEFAULT '',
    user_id                INTEGER NOT NULL DEFAULT 0,
    user_name              VARCHAR(255) NOT NULL DEFAULT '',
    host_authenticated     BOOLEAN NOT NULL DEFAULT FALSE,
    external_authenticated BOOLEAN NOT NULL DEFAULT FALSE,
    phase                  SMALLINT NOT NULL DEFAULT 1,
    idp_id                 SMALLINT NOT NULL DEFAULT 0,
    enforce_logoff         BOOLEAN NOT NULL DEFAULT FALSE,
    excluded_path          TEXT NOT NULL DEFAULT '',
    excluded_action        VARCHAR(32) NOT NULL DEFAULT '',
    location               TEXT NOT NULL DEFAULT '',
    login_time             TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_activity_time     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    pending_response_blob  TEXT NOT NULL DEFAULT '',
    pending_request_blob   TEXT NOT NULL DEFAULT '',
    pending_request_id     VARCHAR(255) NOT NULL DEFAULT ''
);
ALTER TABLE {TABLE} ADD COLUMN IF NOT EXISTS pending_request_id VARCHAR(255) NOT NULL DEFAULT '';
DROP INDEX IF EXISTS {TABLE}_session_idx;
CREATE UNIQUE INDEX IF NOT EXISTS {TABLE}_session_key ON {TABLE} (tracked_session_id);
CREATE INDEX IF NOT EXISTS {TABLE}_idp_idx ON {TABLE} (idp_id);
"""


def _row_to_record(row) -> LoginStateRecord:
    return LoginStateRecord.model_validate(dict(row))


def _record_values(record: LoginStateRecord) -> list:
    data = record.model_dump()
    data["phase"] = int(record.phase)
    return [data[column] for column in COLUMNS]


def _rows_touched(status: Optional[str]) -> int:
    """Parse asyncpg command status strings such as 'UPDATE 3'."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresStateBackend(StateBackend):
    """Login state rows in a single Postgres table."""

    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 5,
        pool: Optional[asyncpg.Pool] = None,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool = pool
        self._schema_ready = False

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            # Statement cache off so PgBouncer poolers behave like direct connections
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                statement_cache_size=0,
            )
            logger.info(
                "Postgres pool initialized (min=%s max=%s)", self.min_size, self.max_size
            )
        if not self._schema_ready:
            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA)
            self._schema_ready = True
        return self._pool

    async def fetch_by_session(self, tracked_session_id: str) -> List[LoginStateRecord]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM {TABLE} WHERE tracked_session_id = $1 ORDER BY id",
                tracked_session_id,
            )
        return [_row_to_record(row) for row in rows]

    async def insert(self, record: LoginStateRecord) -> int:
        placeholders = ", ".join(f"${i}" for i in range(1, len(COLUMNS) + 1))
        query = (
            f"INSERT INTO {TABLE} ({', '.join(COLUMNS)}) "
            f"VALUES ({placeholders}) RETURNING id"
        )
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            try:
                return await conn.fetchval(query, *_record_values(record))
            except asyncpg.UniqueViolationError as e:
                raise DuplicateSessionError(str(e)) from e

    async def update(self, record: LoginStateRecord) -> int:
        assignments = ", ".join(
            f"{column} = ${i}" for i, column in enumerate(COLUMNS, start=1)
        )
        query = f"UPDATE {TABLE} SET {assignments} WHERE id = ${len(COLUMNS) + 1}"
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(query, *_record_values(record), record.id)
        return _rows_touched(status)

    async def rekey(self, old_id: str, new_id: str) -> int:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            try:
                status = await conn.execute(
                    f"UPDATE {TABLE} SET tracked_session_id = $1 WHERE tracked_session_id = $2",
                    new_id,
                    old_id,
                )
            except asyncpg.UniqueViolationError as e:
                raise DuplicateSessionError(str(e)) from e
        return _rows_touched(status)

    async def fetch_by_provider(self, idp_id: int) -> List[LoginStateRecord]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM {TABLE} WHERE idp_id = $1 ORDER BY login_time DESC, id DESC",
                idp_id,
            )
        return [_row_to_record(row) for row in rows]

    async def close(self) -> None:
        """Close the pool (used during graceful shutdown)."""
        if self._pool is None:
            return
        try:
            await self._pool.close()
        finally:
            self._pool = None
