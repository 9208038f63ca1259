"""
Integration tests for real-time mirroring: DatabaseSynchronizer.sync_operation
and the SyncedDatabase write wrapper.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import text

from tarl.config import Settings
from tarl.db.connections import ConnectionManager, QueryResult
from tarl.models.sync import SyncConfig
from tarl.sync.synchronizer import (
    DatabaseSynchronizer,
    MissingPrimaryKeyError,
    SyncedDatabase,
    build_operation,
)

from conftest import count_rows, seed_schools

SCHOOL = {"id": 1, "school_name": "Wat Kor", "province": "Battambang", "student_count": 210}

INSERT_SCHOOL_SQL = (
    "INSERT INTO tbl_tarl_schools (id, school_name, province, student_count) "
    "VALUES (:id, :school_name, :province, :student_count)"
)


def fetch_school(engine, school_id: int):
    with engine.connect() as conn:
        return conn.execute(
            text("SELECT * FROM tbl_tarl_schools WHERE id = :id"), {"id": school_id}
        ).mappings().first()


@pytest.fixture
def synchronizer(db):
    return DatabaseSynchronizer(db, SyncConfig(retry_attempts=3, retry_delay=0))


# ─── Statement building ───────────────────────────────────────────────────────

class TestBuildOperation:
    def test_insert(self):
        sql, params = build_operation("insert", "tbl_tarl_provinces", {"id": 1, "name": "Kep"})
        assert sql == 'INSERT INTO tbl_tarl_provinces ("id", "name") VALUES (:p0, :p1)'
        assert params == {"p0": 1, "p1": "Kep"}

    def test_update_excludes_primary_key_from_set(self):
        sql, params = build_operation(
            "UPDATE", "tbl_tarl_provinces", {"id": 4, "name": "Pailin"}, "id"
        )
        assert sql == 'UPDATE tbl_tarl_provinces SET "name" = :p0 WHERE "id" = :pk'
        assert params == {"p0": "Pailin", "pk": 4}

    def test_delete(self):
        sql, params = build_operation("DELETE", "tbl_tarl_provinces", {"id": 9}, "id")
        assert sql == 'DELETE FROM tbl_tarl_provinces WHERE "id" = :pk'
        assert params == {"pk": 9}

    def test_update_without_primary_key(self):
        with pytest.raises(MissingPrimaryKeyError):
            build_operation("UPDATE", "tbl_tarl_provinces", {"name": "Pailin"}, "id")

    def test_delete_without_primary_key_name(self):
        with pytest.raises(MissingPrimaryKeyError):
            build_operation("DELETE", "tbl_tarl_provinces", {"id": 9})

    def test_unknown_operation(self):
        with pytest.raises(ValueError):
            build_operation("UPSERT", "tbl_tarl_provinces", {"id": 1})

    def test_non_string_operation(self):
        with pytest.raises(ValueError):
            build_operation(None, "tbl_tarl_provinces", {"id": 1})

    def test_empty_data(self):
        with pytest.raises(ValueError):
            build_operation("INSERT", "tbl_tarl_provinces", {})


# ─── sync_operation ───────────────────────────────────────────────────────────

class TestSyncOperation:
    @pytest.mark.asyncio
    async def test_insert_mirrored(self, synchronizer, secondary_engine):
        result = await synchronizer.sync_operation("INSERT", "tbl_tarl_schools", SCHOOL)
        assert result.success is True
        assert result.skipped is False
        assert dict(fetch_school(secondary_engine, 1)) == SCHOOL

    @pytest.mark.asyncio
    async def test_update_mirrored(self, synchronizer, secondary_engine):
        seed_schools(secondary_engine, 2)
        result = await synchronizer.sync_operation(
            "UPDATE", "tbl_tarl_schools", {"id": 2, "student_count": 999}, "id"
        )
        assert result.success is True
        assert fetch_school(secondary_engine, 2)["student_count"] == 999
        assert fetch_school(secondary_engine, 1)["student_count"] == 101

    @pytest.mark.asyncio
    async def test_delete_mirrored(self, synchronizer, secondary_engine):
        seed_schools(secondary_engine, 3)
        result = await synchronizer.sync_operation("DELETE", "tbl_tarl_schools", {"id": 3}, "id")
        assert result.success is True
        assert count_rows(secondary_engine, "tbl_tarl_schools") == 2
        assert fetch_school(secondary_engine, 3) is None

    @pytest.mark.asyncio
    async def test_missing_primary_key_not_retried(self, synchronizer, db):
        db.query_secondary = AsyncMock()
        result = await synchronizer.sync_operation(
            "UPDATE", "tbl_tarl_schools", {"student_count": 5}, "id"
        )
        assert result.success is False
        assert "Primary key required" in result.error
        db.query_secondary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_arguments_never_raise(self, synchronizer, db):
        db.query_secondary = AsyncMock()

        by_type = await synchronizer.sync_operation(42, "tbl_tarl_schools", SCHOOL)
        by_data = await synchronizer.sync_operation("INSERT", "tbl_tarl_schools", ["id"])

        assert by_type.success is False
        assert "Unsupported sync operation" in by_type.error
        assert by_data.success is False
        db.query_secondary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skipped_when_disabled(self, db, secondary_engine):
        synchronizer = DatabaseSynchronizer(db, SyncConfig(enabled=False))
        result = await synchronizer.sync_operation("INSERT", "tbl_tarl_schools", SCHOOL)
        assert result.success is True
        assert result.skipped is True
        assert count_rows(secondary_engine, "tbl_tarl_schools") == 0

    @pytest.mark.asyncio
    async def test_skipped_for_excluded_table(self, synchronizer, db):
        db.query_secondary = AsyncMock()
        result = await synchronizer.sync_operation(
            "INSERT", "tbl_tarl_users", {"id": 1, "password": "hash"}
        )
        assert result.skipped is True
        db.query_secondary.assert_not_awaited()


class TestRetries:
    @pytest.mark.asyncio
    async def test_gives_up_after_retry_attempts(self, synchronizer, db):
        db.query_secondary = AsyncMock(side_effect=Exception("server closed the connection"))
        result = await synchronizer.sync_operation("INSERT", "tbl_tarl_schools", SCHOOL)

        assert result.success is False
        assert result.error == "server closed the connection"
        assert db.query_secondary.await_count == 3

    @pytest.mark.asyncio
    async def test_succeeds_on_second_attempt(self, synchronizer, db):
        db.query_secondary = AsyncMock(side_effect=[Exception("timeout"), QueryResult()])
        result = await synchronizer.sync_operation("INSERT", "tbl_tarl_schools", SCHOOL)

        assert result.success is True
        assert db.query_secondary.await_count == 2

    @pytest.mark.asyncio
    async def test_single_attempt(self, db):
        synchronizer = DatabaseSynchronizer(db, SyncConfig(retry_attempts=1, retry_delay=0))
        db.query_secondary = AsyncMock(side_effect=Exception("timeout"))
        await synchronizer.sync_operation("INSERT", "tbl_tarl_schools", SCHOOL)
        assert db.query_secondary.await_count == 1

    @pytest.mark.asyncio
    async def test_waits_retry_delay_between_attempts(self, db):
        synchronizer = DatabaseSynchronizer(db, SyncConfig(retry_attempts=3, retry_delay=250))
        db.query_secondary = AsyncMock(side_effect=Exception("timeout"))
        with patch("tarl.sync.synchronizer.asyncio.sleep", new=AsyncMock()) as sleep:
            await synchronizer.sync_operation("INSERT", "tbl_tarl_schools", SCHOOL)

        # No sleep after the final attempt
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)


# ─── SyncedDatabase ───────────────────────────────────────────────────────────

class TestSyncedDatabase:
    @pytest.mark.asyncio
    async def test_write_lands_on_both(self, db, synchronizer, primary_engine, secondary_engine):
        synced = SyncedDatabase(db, synchronizer)
        await synced.execute("INSERT", "tbl_tarl_schools", INSERT_SCHOOL_SQL, SCHOOL, data=SCHOOL)

        assert dict(fetch_school(primary_engine, 1)) == SCHOOL
        assert dict(fetch_school(secondary_engine, 1)) == SCHOOL

    @pytest.mark.asyncio
    async def test_secondary_down_keeps_primary_write(self, primary_engine, unreachable_engine):
        db = ConnectionManager(
            settings=Settings(), primary_engine=primary_engine, secondary_engine=unreachable_engine
        )
        synced = SyncedDatabase(
            db, DatabaseSynchronizer(db, SyncConfig(retry_attempts=2, retry_delay=0))
        )

        result = await synced.execute(
            "INSERT", "tbl_tarl_schools", INSERT_SCHOOL_SQL, SCHOOL, data=SCHOOL
        )

        assert result.rowcount == 1
        assert dict(fetch_school(primary_engine, 1)) == SCHOOL

    @pytest.mark.asyncio
    async def test_primary_error_propagates_without_mirror(self, db, synchronizer):
        synchronizer.sync_operation = AsyncMock()
        synced = SyncedDatabase(db, synchronizer)
        with pytest.raises(Exception):
            await synced.execute(
                "INSERT", "tbl_tarl_schools", "INSERT INTO tbl_tarl_missing VALUES (1)", data=SCHOOL
            )
        synchronizer.sync_operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_query_reads_primary(self, db, synchronizer, primary_engine):
        seed_schools(primary_engine, 2)
        result = await SyncedDatabase(db, synchronizer).query(
            "SELECT COUNT(*) AS count FROM tbl_tarl_schools"
        )
        assert result.rows == [{"count": 2}]
