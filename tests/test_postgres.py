"""
Tests for the Postgres state backend.

No database is needed: an asyncpg pool is replaced with mocks and the tests
check the statements and the translation of results.
"""

import unittest
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from samlflow.config import DatabaseSettings
from samlflow.storage import DuplicateSessionError, InMemoryStateBackend, create_backend
from samlflow.storage.postgres import COLUMNS, SCHEMA, PostgresStateBackend, _rows_touched
from samlflow.types.login_state import LoginStateRecord, Phase


def make_pool(conn: AsyncMock) -> MagicMock:
    acquire = MagicMock()
    acquire.__aenter__.return_value = conn
    acquire.__aexit__.return_value = False
    pool = MagicMock()
    pool.acquire.return_value = acquire
    pool.close = AsyncMock()
    return pool


@pytest.fixture
def conn():
    return AsyncMock()


@pytest.fixture
def backend(conn):
    return PostgresStateBackend("postgresql://localhost/test", pool=make_pool(conn))


def row_for(record_id: int, session_id: str = "session-a", **values) -> dict:
    row = {column: None for column in COLUMNS}
    row.update(
        id=record_id,
        tracked_session_id=session_id,
        host_session_name="host_session",
        user_id=0,
        user_name="CLI",
        host_authenticated=False,
        external_authenticated=False,
        phase=1,
        idp_id=0,
        enforce_logoff=False,
        excluded_path="",
        excluded_action="",
        location="/",
        pending_response_blob="",
        pending_request_blob="",
        pending_request_id="",
    )
    row.pop("login_time")
    row.pop("last_activity_time")
    row.update(values)
    return row


# =============================================================================
# Status Parsing Tests
# =============================================================================


class TestRowsTouched(unittest.TestCase):
    """asyncpg command status strings."""

    def test_parses_counts(self):
        self.assertEqual(_rows_touched("UPDATE 3"), 3)
        self.assertEqual(_rows_touched("UPDATE 0"), 0)

    def test_unparseable_is_zero(self):
        self.assertEqual(_rows_touched(None), 0)
        self.assertEqual(_rows_touched(""), 0)
        self.assertEqual(_rows_touched("UPDATE"), 0)


# =============================================================================
# Schema Tests
# =============================================================================


class TestSchema(unittest.TestCase):
    """Table definition."""

    def test_tracked_session_id_is_unique(self):
        self.assertIn(
            "CREATE UNIQUE INDEX IF NOT EXISTS samlflow_login_states_session_key "
            "ON samlflow_login_states (tracked_session_id)",
            SCHEMA,
        )

    def test_every_column_in_table(self):
        for column in COLUMNS:
            with self.subTest(column=column):
                self.assertIn(f"    {column} ", SCHEMA)


# =============================================================================
# Backend Tests
# =============================================================================


class TestPostgresStateBackend:
    """Statements sent to the pool and results returned."""

    @pytest.mark.asyncio
    async def test_schema_created_once(self, backend, conn):
        conn.fetch.return_value = []

        await backend.fetch_by_session("a")
        await backend.fetch_by_session("b")

        schema_calls = [c for c in conn.execute.await_args_list if c.args[0] == SCHEMA]
        assert len(schema_calls) == 1

    @pytest.mark.asyncio
    async def test_insert_returns_new_id(self, backend, conn):
        conn.fetchval.return_value = 17
        record = LoginStateRecord(tracked_session_id="session-a", phase=Phase.SAML_REDIRECTED)

        record_id = await backend.insert(record)

        assert record_id == 17
        query, *values = conn.fetchval.await_args.args
        assert "RETURNING id" in query
        assert len(values) == len(COLUMNS)
        assert values[COLUMNS.index("phase")] == 2
        assert type(values[COLUMNS.index("phase")]) is int

    @pytest.mark.asyncio
    async def test_duplicate_insert_reported(self, backend, conn):
        conn.fetchval.side_effect = asyncpg.UniqueViolationError(
            "duplicate key value violates unique constraint"
        )

        with pytest.raises(DuplicateSessionError):
            await backend.insert(LoginStateRecord(tracked_session_id="session-a"))

    @pytest.mark.asyncio
    async def test_rekey_onto_taken_session_reported(self, backend, conn):
        backend._schema_ready = True
        conn.execute.side_effect = asyncpg.UniqueViolationError(
            "duplicate key value violates unique constraint"
        )

        with pytest.raises(DuplicateSessionError):
            await backend.rekey("old", "new")

    @pytest.mark.asyncio
    async def test_authn_request_id_stored(self, backend, conn):
        conn.fetchval.return_value = 1
        record = LoginStateRecord(tracked_session_id="session-a", pending_request_id="ONELOGIN_abc")

        await backend.insert(record)

        _, *values = conn.fetchval.await_args.args
        assert values[COLUMNS.index("pending_request_id")] == "ONELOGIN_abc"

    @pytest.mark.asyncio
    async def test_update_reports_rows(self, backend, conn):
        conn.execute.return_value = "UPDATE 1"
        record = LoginStateRecord(id=5, tracked_session_id="session-a")

        assert await backend.update(record) == 1

        query, *values = conn.execute.await_args.args
        assert query.startswith("UPDATE samlflow_login_states SET")
        assert values[-1] == 5

    @pytest.mark.asyncio
    async def test_rekey(self, backend, conn):
        conn.execute.return_value = "UPDATE 0"

        assert await backend.rekey("old", "new") == 0
        assert conn.execute.await_args.args[1:] == ("new", "old")

    @pytest.mark.asyncio
    async def test_fetch_by_session_builds_records(self, backend, conn):
        conn.fetch.return_value = [row_for(1), row_for(2, phase=4, user_id=9)]

        records = await backend.fetch_by_session("session-a")

        assert [r.id for r in records] == [1, 2]
        assert records[1].phase == Phase.LOCAL_AUTHED
        assert records[1].user_id == 9

    @pytest.mark.asyncio
    async def test_fetch_by_provider_orders_newest_first(self, backend, conn):
        conn.fetch.return_value = []

        await backend.fetch_by_provider(3)

        query, idp_id = conn.fetch.await_args.args
        assert "ORDER BY login_time DESC" in query
        assert idp_id == 3

    @pytest.mark.asyncio
    async def test_close(self, backend):
        pool = backend._pool

        await backend.close()
        await backend.close()

        pool.close.assert_awaited_once()
        assert backend._pool is None


# =============================================================================
# Backend Selection Tests
# =============================================================================


class TestCreateBackend(unittest.TestCase):
    """DATABASE_URL picks the backend."""

    def test_memory_without_database_url(self):
        backend = create_backend(DatabaseSettings(database_url=None))
        self.assertIsInstance(backend, InMemoryStateBackend)

    def test_postgres_with_database_url(self):
        backend = create_backend(DatabaseSettings(
            database_url="postgresql://localhost/samlflow",
            database_pool_max_size=10,
        ))
        self.assertIsInstance(backend, PostgresStateBackend)
        self.assertEqual(backend.max_size, 10)
