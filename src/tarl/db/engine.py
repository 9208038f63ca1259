"""SQLAlchemy engine construction for the primary and secondary databases."""
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url

from tarl.config import Settings

PRIMARY = "primary"
SECONDARY = "secondary"


class SecondaryNotConfiguredError(RuntimeError):
    """Raised when the secondary database is used but no connection settings exist."""


def primary_url(settings: Settings) -> URL:
    """Build the primary database URL from PRIMARY_DATABASE_URL or the PG* variables."""
    if settings.primary_database_url:
        return make_url(settings.primary_database_url)
    return URL.create(
        "postgresql+psycopg2",
        username=settings.pguser,
        password=settings.pgpassword or None,
        host=settings.pghost,
        port=settings.pgport,
        database=settings.pgdatabase,
    )


def secondary_url(settings: Settings) -> URL:
    """
    Build the secondary database URL.

    Raises:
        SecondaryNotConfiguredError: if neither SECONDARY_DATABASE_URL nor
            SECONDARY_PGHOST is set.
    """
    if settings.secondary_database_url:
        return make_url(settings.secondary_database_url)
    if not settings.secondary_pghost:
        raise SecondaryNotConfiguredError(
            "Secondary database is not configured "
            "(set SECONDARY_DATABASE_URL or SECONDARY_PGHOST)"
        )
    return URL.create(
        "postgresql+psycopg2",
        username=settings.secondary_pguser,
        password=settings.secondary_pgpassword or None,
        host=settings.secondary_pghost,
        port=settings.secondary_pgport,
        database=settings.secondary_pgdatabase,
        query={"sslmode": settings.secondary_sslmode},
    )


def build_engine(
    url: URL,
    *,
    pool_size: int,
    connect_timeout: Optional[int] = None,
) -> Engine:
    """
    Create a pooled engine.

    Pool size and connect timeout only apply to PostgreSQL; other backends
    (SQLite in tests) get SQLAlchemy's defaults.
    """
    if url.get_backend_name() != "postgresql":
        return create_engine(url)
    connect_args = {}
    if connect_timeout is not None:
        connect_args["connect_timeout"] = connect_timeout
    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def build_primary_engine(settings: Settings) -> Engine:
    return build_engine(
        primary_url(settings),
        pool_size=settings.primary_pool_size,
        connect_timeout=settings.primary_connect_timeout,
    )


def build_secondary_engine(settings: Settings) -> Engine:
    return build_engine(
        secondary_url(settings),
        pool_size=settings.secondary_pool_size,
        connect_timeout=settings.secondary_connect_timeout,
    )
