"""Shared test fixtures."""
from typing import Generator

import pytest
from sqlalchemy import create_engine, event, text
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

# Import all models so SQLModel.metadata knows about them
from tarl.models.audit import DeletedRecord, UserActivity  # noqa: F401
from tarl.config import Settings
from tarl.db.connections import ConnectionManager

SCHOOLS_DDL = """
    CREATE TABLE tbl_tarl_schools (
        id INTEGER PRIMARY KEY,
        school_name TEXT NOT NULL,
        province TEXT,
        student_count INTEGER
    )
"""

PROVINCES_DDL = """
    CREATE TABLE tbl_tarl_provinces (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL
    )
"""

# Directory does not exist, so SQLite cannot open the file
UNREACHABLE_URL = "sqlite:////nonexistent-tarl-dir/unreachable.db"


def memory_engine():
    return create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def create_sync_tables(engine) -> None:
    with engine.begin() as conn:
        conn.execute(text(SCHOOLS_DDL))
        conn.execute(text(PROVINCES_DDL))


def seed_schools(engine, count: int) -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO tbl_tarl_schools (id, school_name, province, student_count) "
                "VALUES (:id, :name, :province, :students)"
            ),
            [
                {
                    "id": i,
                    "name": f"School {i}",
                    "province": "Battambang" if i % 2 else "Kampong Cham",
                    "students": 100 + i,
                }
                for i in range(1, count + 1)
            ],
        )


def count_rows(engine, table: str) -> int:
    with engine.connect() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine holding the audit tables."""
    engine = memory_engine()
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture(name="primary_engine")
def primary_engine_fixture():
    """Stand-in for the local primary database."""
    engine = memory_engine()
    create_sync_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="secondary_engine")
def secondary_engine_fixture():
    """Stand-in for the remote secondary database."""
    engine = memory_engine()
    create_sync_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="unreachable_engine")
def unreachable_engine_fixture():
    engine = create_engine(UNREACHABLE_URL)
    yield engine
    engine.dispose()


@pytest.fixture(name="db")
def db_fixture(primary_engine, secondary_engine) -> ConnectionManager:
    return ConnectionManager(
        settings=Settings(),
        primary_engine=primary_engine,
        secondary_engine=secondary_engine,
    )


@pytest.fixture(name="secondary_statements")
def secondary_statements_fixture(secondary_engine):
    """Every SQL statement sent to the secondary database, in order."""
    statements = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement.strip())

    event.listen(secondary_engine, "before_cursor_execute", _record)
    yield statements
    event.remove(secondary_engine, "before_cursor_execute", _record)
