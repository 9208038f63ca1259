"""
DatabaseSynchronizer replicates allowlisted tables from the primary
database to the secondary database.

Full sync of one table (sync_table):
  1. SELECT * from the primary table
  2. In ONE secondary transaction: clear the table, then INSERT every row,
     one statement per row, in batches of config.batch_size
  3. Commit; on any error the transaction rolls back and the secondary table
     keeps its previous contents

sync_all_tables runs sync_table over SYNC_TABLES in order. A failing table is
recorded and the run continues with the next one.

Real-time sync (sync_operation) mirrors a single INSERT/UPDATE/DELETE that has
already been applied to the primary. It never raises: the caller's primary
write must not be undone by a secondary failure.

Conflicts between full syncs are resolved by the primary always winning:
the next full sync replaces the secondary table wholesale.
"""
import asyncio
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection

from tarl.db.connections import ConnectionManager, QueryResult
from tarl.db.engine import SECONDARY
from tarl.models.sync import (
    SchemaComparison,
    SyncCheckResult,
    SyncConfig,
    SyncDetails,
    SyncOperationResult,
    SyncRunResult,
    SyncStatus,
    SyncSummary,
    TableFailure,
    TableSyncResult,
)
from tarl.sync.schema import SCHEMA_QUERY, diff_schemas
from tarl.sync.tables import SYNC_TABLES, TEST_SYNC_TABLE, is_syncable

logger = logging.getLogger(__name__)

SYNC_LOG_SIZE = 10
OPERATIONS = ("INSERT", "UPDATE", "DELETE")


class TableNotSyncableError(ValueError):
    """Raised when a table outside SYNC_TABLES is passed to sync_table()."""


class MissingPrimaryKeyError(ValueError):
    """Raised when UPDATE/DELETE data does not carry the primary-key column."""


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _bind_value(value: Any) -> Any:
    # json/jsonb columns come back from psycopg2 as dicts
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return value


def build_insert(table_name: str, columns: List[str]) -> str:
    column_list = ", ".join(_quote(col) for col in columns)
    placeholders = ", ".join(f":p{i}" for i in range(len(columns)))
    return f"INSERT INTO {table_name} ({column_list}) VALUES ({placeholders})"


def build_operation(
    operation: str,
    table_name: str,
    data: Mapping[str, Any],
    primary_key: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    Build the SQL and bind params that mirror one row-level operation.

    Raises:
        ValueError: unknown operation or empty data.
        MissingPrimaryKeyError: UPDATE/DELETE without a primary-key value.
    """
    if not isinstance(operation, str) or operation.upper() not in OPERATIONS:
        raise ValueError(f"Unsupported sync operation: {operation!r}")
    operation = operation.upper()
    if not data:
        raise ValueError(f"No data supplied for {operation} on {table_name}")

    if operation == "INSERT":
        columns = list(data.keys())
        params = {f"p{i}": _bind_value(data[col]) for i, col in enumerate(columns)}
        return build_insert(table_name, columns), params

    if not primary_key or data.get(primary_key) is None:
        raise MissingPrimaryKeyError(f"Primary key required for {operation} operation")

    if operation == "UPDATE":
        columns = [col for col in data.keys() if col != primary_key]
        if not columns:
            raise ValueError(f"No columns to update on {table_name}")
        set_clause = ", ".join(f"{_quote(col)} = :p{i}" for i, col in enumerate(columns))
        params = {f"p{i}": _bind_value(data[col]) for i, col in enumerate(columns)}
        params["pk"] = data[primary_key]
        sql = f"UPDATE {table_name} SET {set_clause} WHERE {_quote(primary_key)} = :pk"
        return sql, params

    sql = f"DELETE FROM {table_name} WHERE {_quote(primary_key)} = :pk"
    return sql, {"pk": data[primary_key]}


class DatabaseSynchronizer:
    """Replicates SYNC_TABLES from the primary database to the secondary."""

    def __init__(self, db: ConnectionManager, config: Optional[SyncConfig] = None):
        """
        Args:
            db: ConnectionManager for both databases.
            config: Sync settings. Defaults to SyncConfig.from_settings(db.settings).
        """
        self.db = db
        self.config = config or SyncConfig.from_settings(db.settings)
        self.is_running = False
        self._sync_log: Deque[SyncSummary] = deque(maxlen=SYNC_LOG_SIZE)
        self._scheduler = None

    # ─── Service lifecycle ────────────────────────────────────────────────────

    async def start_sync(self) -> bool:
        """
        Start the synchronization service.

        Both databases must answer a probe first. In batch mode a scheduler
        runs sync_all_tables() every config.batch_interval minutes.

        Returns:
            True if the service is running after the call.
        """
        if self.is_running:
            logger.info("Synchronization is already running")
            return True

        logger.info("Starting database synchronization service (mode=%s)", self.config.mode)
        connections = await self.db.test_connections()
        if not connections.local or not connections.remote:
            logger.error("Cannot start sync - database connections failed")
            return False

        self.is_running = True
        if self.config.mode == "batch":
            self._start_batch_scheduler()

        logger.info("Database synchronization service started")
        return True

    def stop_sync(self) -> None:
        self.is_running = False
        self._stop_batch_scheduler()
        logger.info("Database synchronization service stopped")

    def update_config(self, config: SyncConfig) -> None:
        """Replace the configuration; reschedules the batch job if running."""
        self.config = config
        logger.info("Synchronization configuration updated: %s", config.model_dump())
        if not self.is_running:
            return
        self._stop_batch_scheduler()
        if config.mode == "batch":
            self._start_batch_scheduler()

    def get_sync_status(self) -> SyncStatus:
        log = list(self._sync_log)
        return SyncStatus(
            is_running=self.is_running,
            config=self.config,
            last_sync=log[-1] if log else None,
            sync_log=log,
        )

    # ─── Full sync ────────────────────────────────────────────────────────────

    async def sync_all_tables(self) -> SyncRunResult:
        """Sync every allowlisted table; failures are collected, not raised."""
        logger.info("Starting full database synchronization")
        details = SyncDetails()

        for table_name in SYNC_TABLES:
            try:
                result = await self.sync_table(table_name)
                details.successful.append(table_name)
                details.total_records += result.record_count
                logger.info("Synced %s: %d records", table_name, result.record_count)
            except Exception as exc:
                details.failed.append(TableFailure(table=table_name, error=str(exc)))
                logger.error("Failed to sync %s: %s", table_name, exc)

        summary = SyncSummary(
            successful=len(details.successful),
            failed=len(details.failed),
            total_records=details.total_records,
            details=details,
        )
        self._sync_log.append(summary)
        logger.info(
            "Synchronization complete: %d tables ok, %d failed, %d records",
            summary.successful,
            summary.failed,
            summary.total_records,
        )
        return SyncRunResult(success=not details.failed, summary=summary)

    async def sync_table(self, table_name: str) -> TableSyncResult:
        """
        Replace the secondary copy of `table_name` with the primary's rows.

        Raises:
            TableNotSyncableError: if the table is not in SYNC_TABLES.
            Any database error from either side (after logging).
        """
        if not is_syncable(table_name):
            raise TableNotSyncableError(
                f"Table {table_name} is not configured for synchronization"
            )

        logger.info("Synchronizing table: %s", table_name)
        primary = await self.db.query_primary(f"SELECT * FROM {table_name}")
        rows = primary.rows
        if not rows:
            logger.info("No rows in primary %s; clearing secondary copy", table_name)

        clear_sql = self._clear_statement(table_name)
        batch_size = self.config.batch_size

        def _replace(conn: Connection) -> int:
            conn.execute(text(clear_sql))
            if not rows:
                return 0
            columns = list(rows[0].keys())
            insert = text(build_insert(table_name, columns))
            inserted = 0
            for start in range(0, len(rows), batch_size):
                for row in rows[start:start + batch_size]:
                    params = {f"p{i}": _bind_value(row[col]) for i, col in enumerate(columns)}
                    conn.execute(insert, params)
                    inserted += 1
                logger.debug("%s: inserted %d/%d rows", table_name, inserted, len(rows))
            return inserted

        record_count = await self.db.run_in_transaction(SECONDARY, _replace)
        return TableSyncResult(table_name=table_name, record_count=record_count)

    # ─── Real-time sync ───────────────────────────────────────────────────────

    async def sync_operation(
        self,
        operation: str,
        table_name: str,
        data: Mapping[str, Any],
        primary_key: Optional[str] = None,
    ) -> SyncOperationResult:
        """
        Mirror one row-level write to the secondary database.

        Transient failures are retried up to config.retry_attempts times in
        total, config.retry_delay milliseconds apart. Never raises.
        """
        if not self.config.enabled or not is_syncable(table_name):
            return SyncOperationResult(success=True, skipped=True)

        try:
            sql, params = build_operation(operation, table_name, data, primary_key)
        except Exception as exc:
            logger.error("Failed to sync %s on %s: %s", operation, table_name, exc)
            return SyncOperationResult(success=False, error=str(exc))

        attempts = self.config.retry_attempts
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                await self.db.query_secondary(sql, params)
                logger.info("Synced %s operation on %s", operation.upper(), table_name)
                return SyncOperationResult(success=True)
            except Exception as exc:
                last_error = str(exc)
                logger.warning(
                    "Sync %s on %s failed (attempt %d/%d): %s",
                    operation.upper(), table_name, attempt, attempts, exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_delay / 1000)

        logger.error("Failed to sync %s on %s: %s", operation.upper(), table_name, last_error)
        return SyncOperationResult(success=False, error=last_error)

    # ─── Diagnostics ──────────────────────────────────────────────────────────

    async def test_sync(self, table_name: str = TEST_SYNC_TABLE) -> SyncCheckResult:
        """Sync one small table and check both sides end up with the same row count."""
        count_sql = f"SELECT COUNT(*) AS count FROM {table_name}"
        try:
            primary_count = _count(await self.db.query_primary(count_sql))
            if primary_count == 0:
                return SyncCheckResult(
                    success=False,
                    message=f"Test sync skipped: {table_name} is empty on primary",
                )
            await self.sync_table(table_name)
            secondary_count = _count(await self.db.query_secondary(count_sql))
        except Exception as exc:
            return SyncCheckResult(success=False, message=f"Test sync failed: {exc}")

        if primary_count == secondary_count:
            return SyncCheckResult(
                success=True,
                message=f"Test sync successful: {primary_count} records synced",
            )
        return SyncCheckResult(
            success=False,
            message=(
                f"Test sync failed: record counts do not match "
                f"({primary_count} vs {secondary_count})"
            ),
        )

    async def compare_schemas(self) -> SchemaComparison:
        """Diff information_schema.columns between the two databases."""
        try:
            primary, secondary = await asyncio.gather(
                self.db.query_primary(SCHEMA_QUERY),
                self.db.query_secondary(SCHEMA_QUERY),
            )
        except Exception as exc:
            logger.error("Schema comparison failed: %s", exc)
            return SchemaComparison()
        return diff_schemas(primary.rows, secondary.rows)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _clear_statement(self, table_name: str) -> str:
        if self.db.dialect_name(SECONDARY) == "postgresql":
            return f"TRUNCATE TABLE {table_name} RESTART IDENTITY CASCADE"
        return f"DELETE FROM {table_name}"

    def _start_batch_scheduler(self) -> None:
        from tarl.scheduler.jobs import build_scheduler

        self._scheduler = build_scheduler(self)
        self._scheduler.start()
        logger.info(
            "Batch synchronization scheduled every %d minutes", self.config.batch_interval
        )

    def _stop_batch_scheduler(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None


def _count(result: QueryResult) -> int:
    return int(result.rows[0]["count"]) if result.rows else 0


class SyncedDatabase:
    """Writes go to the primary and are then mirrored to the secondary."""

    def __init__(self, db: ConnectionManager, synchronizer: DatabaseSynchronizer):
        self.db = db
        self.synchronizer = synchronizer

    async def execute(
        self,
        operation: str,
        table_name: str,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
        primary_key: Optional[str] = None,
    ) -> QueryResult:
        """
        Run a write on the primary, then mirror `data` to the secondary.

        Primary errors propagate. The mirror result is logged only; it never
        fails or undoes the primary write.
        """
        result = await self.db.query_primary(sql, params)
        if data and is_syncable(table_name):
            mirrored = await self.synchronizer.sync_operation(
                operation, table_name, data, primary_key
            )
            if not mirrored.success:
                logger.warning(
                    "Primary %s on %s committed but secondary mirror failed: %s",
                    operation.upper(), table_name, mirrored.error,
                )
        return result

    async def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        return await self.db.query_primary(sql, params)
