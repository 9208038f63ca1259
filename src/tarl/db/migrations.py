"""
Schema setup for the audit and soft-delete layer.

Creates the audit tables on any backend. On PostgreSQL it also adds the
soft-delete columns to every allowlisted table that exists and installs the
soft_delete_record() / restore_deleted_record() functions used by
AuditLogger.

Every step is idempotent (CREATE TABLE IF NOT EXISTS, ADD COLUMN IF NOT
EXISTS, CREATE OR REPLACE FUNCTION), so it is safe to run on every start.
"""
import logging

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlmodel import SQLModel

from tarl.models.audit import DeletedRecord, UserActivity
from tarl.sync.tables import SYNC_TABLES

logger = logging.getLogger(__name__)

SOFT_DELETE_FUNCTION = """
CREATE OR REPLACE FUNCTION soft_delete_record(
    p_table_name TEXT,
    p_record_id INTEGER,
    p_user_id INTEGER,
    p_username TEXT,
    p_reason TEXT DEFAULT NULL
) RETURNS BOOLEAN AS $$
DECLARE
    v_row JSONB;
BEGIN
    EXECUTE format(
        'UPDATE %I SET is_deleted = true, deleted_at = NOW(), deleted_by = $1 '
        'WHERE id = $2 AND (is_deleted = false OR is_deleted IS NULL) '
        'RETURNING to_jsonb(%I.*)',
        p_table_name, p_table_name
    ) INTO v_row USING p_user_id, p_record_id;

    IF v_row IS NULL THEN
        RETURN FALSE;
    END IF;

    INSERT INTO tbl_tarl_deleted_records (
        table_name, record_id, record_data, deleted_by, deleted_by_username,
        deleted_at, delete_reason, retention_period_days, can_be_restored, is_restored
    ) VALUES (
        p_table_name, p_record_id, v_row::TEXT, p_user_id, p_username,
        NOW(), p_reason, 90, true, false
    );

    INSERT INTO tbl_tarl_user_activities (
        user_id, username, action_type, table_name, record_id, old_data,
        changes_summary, is_soft_delete, created_at
    ) VALUES (
        p_user_id, p_username, 'DELETE', p_table_name, p_record_id, v_row::TEXT,
        COALESCE('Soft deleted: ' || p_reason, 'Soft deleted'), true, NOW()
    );

    RETURN TRUE;
END;
$$ LANGUAGE plpgsql;
"""

RESTORE_FUNCTION = """
CREATE OR REPLACE FUNCTION restore_deleted_record(
    p_table_name TEXT,
    p_record_id INTEGER,
    p_user_id INTEGER,
    p_username TEXT
) RETURNS BOOLEAN AS $$
DECLARE
    v_archive_id INTEGER;
    v_restored INTEGER;
BEGIN
    SELECT id INTO v_archive_id
    FROM tbl_tarl_deleted_records
    WHERE table_name = p_table_name AND record_id = p_record_id
      AND is_restored = false AND can_be_restored = true
      AND deleted_at + INTERVAL '1 day' * retention_period_days >= NOW()
    ORDER BY deleted_at DESC
    LIMIT 1;

    IF v_archive_id IS NULL THEN
        RETURN FALSE;
    END IF;

    EXECUTE format(
        'UPDATE %I SET is_deleted = false, deleted_at = NULL, deleted_by = NULL '
        'WHERE id = $1 AND is_deleted = true',
        p_table_name
    ) USING p_record_id;
    GET DIAGNOSTICS v_restored = ROW_COUNT;

    IF v_restored = 0 THEN
        RETURN FALSE;
    END IF;

    UPDATE tbl_tarl_deleted_records
    SET is_restored = true, restored_at = NOW(), restored_by = p_user_id
    WHERE id = v_archive_id;

    INSERT INTO tbl_tarl_user_activities (
        user_id, username, action_type, table_name, record_id,
        changes_summary, is_soft_delete, created_at
    ) VALUES (
        p_user_id, p_username, 'RESTORE', p_table_name, p_record_id,
        'Restored soft-deleted record', false, NOW()
    );

    RETURN TRUE;
END;
$$ LANGUAGE plpgsql;
"""

SOFT_DELETE_COLUMNS = (
    ("is_deleted", "BOOLEAN DEFAULT false"),
    ("deleted_at", "TIMESTAMP"),
    ("deleted_by", "INTEGER"),
)


def run_migrations(engine: Engine) -> None:
    """Apply all schema setup. Safe to call multiple times.

    Args:
        engine: SQLAlchemy engine for the database holding the audit tables.
    """
    SQLModel.metadata.create_all(
        engine, tables=[UserActivity.__table__, DeletedRecord.__table__]
    )
    if engine.dialect.name != "postgresql":
        logger.info("Skipping soft-delete columns and functions on %s", engine.dialect.name)
        return

    with engine.begin() as conn:
        for table in SYNC_TABLES:
            add_soft_delete_columns(conn, table)
        install_audit_functions(conn)
    logger.info("Audit schema migrations applied")


def add_soft_delete_columns(conn: Connection, table: str) -> None:
    """Add is_deleted / deleted_at / deleted_by to `table` if it exists (PostgreSQL)."""
    for column, col_type in SOFT_DELETE_COLUMNS:
        conn.execute(
            text(f"ALTER TABLE IF EXISTS {table} ADD COLUMN IF NOT EXISTS {column} {col_type}")
        )


def install_audit_functions(conn: Connection) -> None:
    conn.execute(text(SOFT_DELETE_FUNCTION))
    conn.execute(text(RESTORE_FUNCTION))
