"""
Dual-database connection manager.

Holds the primary (local) and secondary (remote) engines and runs raw SQL on
either side, or on both at once. Engines are built lazily from Settings on
first use unless they are passed in.

SQLAlchemy is synchronous; every driver call runs in the default thread pool
executor so it doesn't block the asyncio event loop. The engine is resolved
on the calling thread before the call is handed to the executor, so each
side gets exactly one pool.

Failure semantics differ by call:
  query_primary / query_secondary  → log and re-raise
  query_both / get_database_info   → failing side becomes None
  test_connections                 → failing side becomes False
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from tarl.config import Settings, get_settings
from tarl.db.engine import (
    PRIMARY,
    SECONDARY,
    build_primary_engine,
    build_secondary_engine,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROBE_QUERY = "SELECT 1 AS test"

DATABASE_INFO_QUERY = """
    SELECT
      current_database() AS database_name,
      current_user AS user_name,
      inet_server_addr() AS server_ip,
      version() AS version
"""


@dataclass
class QueryResult:
    """Rows (as dicts) returned by one statement, plus the affected row count."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0


@dataclass
class DualQueryResult:
    primary: Optional[QueryResult]
    secondary: Optional[QueryResult]


@dataclass
class ConnectionStatus:
    local: bool = False
    remote: bool = False


class ConnectionManager:
    """Runs queries against the primary database, the secondary database, or both."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        primary_engine: Optional[Engine] = None,
        secondary_engine: Optional[Engine] = None,
    ):
        """
        Args:
            settings: Connection settings. Defaults to get_settings().
            primary_engine: Pre-built engine for the primary side (tests).
            secondary_engine: Pre-built engine for the secondary side (tests).
        """
        self._settings = settings
        self._engines: Dict[str, Optional[Engine]] = {
            PRIMARY: primary_engine,
            SECONDARY: secondary_engine,
        }
        self._engine_lock = threading.Lock()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def engine(self, target: str) -> Engine:
        """Return the engine for `target`, creating it on first call."""
        if target not in self._engines:
            raise ValueError(f"Unknown database target: {target}")
        with self._engine_lock:
            if self._engines[target] is None:
                if target == PRIMARY:
                    engine = build_primary_engine(self.settings)
                else:
                    engine = build_secondary_engine(self.settings)
                logger.info(
                    "Created %s database engine for %s",
                    target,
                    engine.url.render_as_string(hide_password=True),
                )
                self._engines[target] = engine
            return self._engines[target]

    def dialect_name(self, target: str) -> str:
        return self.engine(target).dialect.name

    # ─── Queries ──────────────────────────────────────────────────────────────

    async def query_primary(
        self, sql: str, params: Optional[Mapping[str, Any]] = None
    ) -> QueryResult:
        return await self._query(PRIMARY, sql, params)

    async def query_secondary(
        self, sql: str, params: Optional[Mapping[str, Any]] = None
    ) -> QueryResult:
        return await self._query(SECONDARY, sql, params)

    async def query_both(
        self, sql: str, params: Optional[Mapping[str, Any]] = None
    ) -> DualQueryResult:
        """
        Run the same statement on both databases concurrently.

        One side failing never cancels or hides the other side's result;
        the failing side is reported as None.
        """
        primary, secondary = await asyncio.gather(
            self.query_primary(sql, params),
            self.query_secondary(sql, params),
            return_exceptions=True,
        )
        return DualQueryResult(
            primary=None if isinstance(primary, BaseException) else primary,
            secondary=None if isinstance(secondary, BaseException) else secondary,
        )

    async def run_in_transaction(self, target: str, fn: Callable[[Connection], T]) -> T:
        """
        Call fn(connection) inside a single transaction on one database.

        The transaction commits if fn returns and rolls back if it raises.
        Errors are logged and re-raised.
        """
        def _in_transaction(engine: Engine) -> T:
            with engine.begin() as conn:
                return fn(conn)

        try:
            engine = self.engine(target)
            return await self._run(lambda: _in_transaction(engine))
        except Exception as exc:
            logger.error("%s database transaction error: %s", target.capitalize(), exc)
            raise

    # ─── Probes ───────────────────────────────────────────────────────────────

    async def test_connections(self) -> ConnectionStatus:
        """Probe both databases with a trivial query. Never raises."""
        status = ConnectionStatus()

        try:
            await self.query_primary(PROBE_QUERY)
            status.local = True
            logger.info("Local database connection successful")
        except Exception as exc:
            logger.error("Local database connection failed: %s", exc)

        try:
            await self.query_secondary(PROBE_QUERY)
            status.remote = True
            logger.info("Remote database connection successful")
        except Exception as exc:
            logger.error("Remote database connection failed: %s", exc)

        return status

    async def get_database_info(self) -> Dict[str, Optional[Dict[str, Any]]]:
        """Database name, user, server address and version for each side (PostgreSQL only)."""
        result = await self.query_both(DATABASE_INFO_QUERY)
        return {
            PRIMARY: result.primary.rows[0] if result.primary and result.primary.rows else None,
            SECONDARY: result.secondary.rows[0] if result.secondary and result.secondary.rows else None,
        }

    def close(self) -> None:
        """Dispose every engine that has been created."""
        for target, engine in self._engines.items():
            if engine is not None:
                engine.dispose()
                logger.info("Closed %s database connections", target)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _query(
        self, target: str, sql: str, params: Optional[Mapping[str, Any]]
    ) -> QueryResult:
        logger.debug(
            "Executing query on %s database: %s", target.upper(), sql.strip()[:100]
        )
        try:
            engine = self.engine(target)
            return await self._run(lambda: self._execute(engine, sql, params))
        except Exception as exc:
            logger.error("%s database query error: %s", target.capitalize(), exc)
            raise

    def _execute(
        self, engine: Engine, sql: str, params: Optional[Mapping[str, Any]]
    ) -> QueryResult:
        with engine.begin() as conn:
            result = conn.execute(text(sql), dict(params or {}))
            if result.returns_rows:
                rows = [dict(row) for row in result.mappings()]
                return QueryResult(rows=rows, rowcount=len(rows))
            return QueryResult(rows=[], rowcount=result.rowcount)

    async def _run(self, fn: Callable[[], T]) -> T:
        """Run a blocking SQLAlchemy call in the thread pool."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)
