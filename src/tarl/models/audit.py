"""Audit trail models: user activity log and soft-deleted record archive."""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values (SQLite drops the offset on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ActionType(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    RESTORE = "RESTORE"


class UserActivity(SQLModel, table=True):
    """One row per audited user action. Append-only."""

    __tablename__ = "tbl_tarl_user_activities"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, index=True)
    username: Optional[str] = None
    user_role: Optional[str] = None
    action_type: str = Field(index=True)  # ActionType value
    table_name: Optional[str] = Field(default=None, index=True)
    record_id: Optional[int] = None

    # Row snapshots as JSON text
    old_data: Optional[str] = None
    new_data: Optional[str] = None
    changes_summary: Optional[str] = None

    # Client metadata
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None

    is_soft_delete: bool = False
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class DeletedRecord(SQLModel, table=True):
    """
    Archive entry written by the soft_delete_record() database function.
    The original row stays in its table with is_deleted = true.
    """

    __tablename__ = "tbl_tarl_deleted_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    record_id: int
    record_data: Optional[str] = None  # JSON snapshot of the row at delete time
    deleted_by: Optional[int] = None
    deleted_by_username: Optional[str] = None
    deleted_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    delete_reason: Optional[str] = None
    retention_period_days: int = 90
    can_be_restored: bool = True
    is_restored: bool = False
    restored_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    restored_by: Optional[int] = None

    @property
    def expires_at(self) -> datetime:
        return as_utc(self.deleted_at) + timedelta(days=self.retention_period_days)

    def is_restorable(self, now: Optional[datetime] = None) -> bool:
        now = as_utc(now) if now else utcnow()
        return self.can_be_restored and not self.is_restored and now <= self.expires_at
