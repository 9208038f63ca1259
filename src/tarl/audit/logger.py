"""
AuditLogger: user activity trail and soft-delete / restore.

Audit logging must never break the operation that triggered it:
  log_activity            → catches and logs every error, returns nothing
  soft_delete / restore   → return False on any error
  queries / cleanup       → raise (callers are admin views that report errors)

Soft delete and restore are implemented server-side by the
soft_delete_record() and restore_deleted_record() database functions
(installed by tarl.db.migrations); this class only marshals arguments.
"""
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy import Interval, case, delete, func, or_, text
from sqlalchemy.engine import Connection, Engine
from sqlmodel import Session, select

from tarl.models.audit import ActionType, DeletedRecord, UserActivity, as_utc, utcnow

logger = logging.getLogger(__name__)

MIN_CLEANUP_AGE_DAYS = 30
TRAINING_TABLE_PATTERN = "tbl_tarl_training%"


@dataclass
class AuditEntry:
    """Input for AuditLogger.log_activity()."""
    action_type: Union[ActionType, str]
    user_id: Optional[int] = None
    username: Optional[str] = None
    user_role: Optional[str] = None
    table_name: Optional[str] = None
    record_id: Optional[int] = None
    old_data: Optional[Any] = None   # row snapshot before the change
    new_data: Optional[Any] = None   # row snapshot after the change
    changes_summary: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    is_soft_delete: bool = False


@dataclass
class AuditUser:
    user_id: Optional[int]
    username: Optional[str]
    user_role: Optional[str]


def _to_json(data: Any) -> Optional[str]:
    if data is None or isinstance(data, str):
        return data
    return json.dumps(data, default=str)


class AuditLogger:
    """Writes and reads the audit tables on one database."""

    def __init__(self, engine: Engine):
        """
        Args:
            engine: SQLAlchemy engine for the database holding the audit
                tables (the primary; audit data is never replicated).
        """
        self.engine = engine

    # ─── Writes ───────────────────────────────────────────────────────────────

    def log_activity(self, entry: AuditEntry) -> None:
        """Append one activity row. Never raises."""
        try:
            activity = UserActivity(
                user_id=entry.user_id,
                username=entry.username,
                user_role=entry.user_role,
                action_type=ActionType(entry.action_type).value,
                table_name=entry.table_name,
                record_id=entry.record_id,
                old_data=_to_json(entry.old_data),
                new_data=_to_json(entry.new_data),
                changes_summary=entry.changes_summary,
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
                session_id=entry.session_id,
                is_soft_delete=entry.is_soft_delete,
            )
            with Session(self.engine) as s:
                s.add(activity)
                s.commit()
        except Exception as exc:
            logger.error("Error logging audit entry: %s", exc)

    def soft_delete(
        self,
        table_name: str,
        record_id: int,
        user_id: int,
        username: str,
        delete_reason: Optional[str] = None,
    ) -> bool:
        """Mark a record deleted and archive it. Returns False on any failure."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    text(
                        "SELECT soft_delete_record("
                        ":table_name, :record_id, :user_id, :username, :delete_reason)"
                    ),
                    {
                        "table_name": table_name,
                        "record_id": record_id,
                        "user_id": user_id,
                        "username": username,
                        "delete_reason": delete_reason,
                    },
                ).scalar()
            if result:
                logger.info("Soft deleted %s #%s by %s", table_name, record_id, username)
            return bool(result)
        except Exception as exc:
            logger.error("Soft delete of %s #%s failed: %s", table_name, record_id, exc)
            return False

    def restore_record(
        self,
        table_name: str,
        record_id: int,
        user_id: int,
        username: str,
    ) -> bool:
        """Undo a soft delete. Returns False on any failure."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    text(
                        "SELECT restore_deleted_record("
                        ":table_name, :record_id, :user_id, :username)"
                    ),
                    {
                        "table_name": table_name,
                        "record_id": record_id,
                        "user_id": user_id,
                        "username": username,
                    },
                ).scalar()
            if result:
                logger.info("Restored %s #%s by %s", table_name, record_id, username)
            return bool(result)
        except Exception as exc:
            logger.error("Restore of %s #%s failed: %s", table_name, record_id, exc)
            return False

    def set_session_variables(
        self,
        conn: Connection,
        user_id: int,
        username: str,
        user_role: Optional[str] = None,
    ) -> None:
        """
        Expose the acting user to database triggers for the rest of the
        current transaction (PostgreSQL set_config with is_local = true).
        """
        try:
            conn.execute(
                text(
                    "SELECT set_config('audit.user_id', :user_id, true), "
                    "set_config('audit.username', :username, true), "
                    "set_config('audit.user_role', :user_role, true)"
                ),
                {
                    "user_id": str(user_id),
                    "username": username,
                    "user_role": user_role or "",
                },
            )
        except Exception as exc:
            logger.warning("Could not set audit session variables: %s", exc)

    def cleanup_old_deleted_records(self, older_than_days: int = 365) -> int:
        """
        Permanently remove archive rows deleted more than `older_than_days` ago.

        Raises:
            ValueError: if older_than_days is below MIN_CLEANUP_AGE_DAYS.
        """
        if older_than_days < MIN_CLEANUP_AGE_DAYS:
            raise ValueError(
                f"Cannot permanently delete records newer than {MIN_CLEANUP_AGE_DAYS} days"
            )
        cutoff = utcnow() - timedelta(days=older_than_days)
        with Session(self.engine) as s:
            result = s.execute(delete(DeletedRecord).where(DeletedRecord.deleted_at < cutoff))
            s.commit()
        logger.info("Permanently deleted %d archived records older than %d days",
                    result.rowcount, older_than_days)
        return result.rowcount

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get_recent_activities(
        self, limit: int = 50, user_id: Optional[int] = None
    ) -> List[UserActivity]:
        """At most `limit` activities, newest first, optionally for one user."""
        return self.search_activities(user_id=user_id, limit=limit)

    def search_activities(
        self,
        user_id: Optional[int] = None,
        table_name: Optional[str] = None,
        action_type: Optional[Union[ActionType, str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        is_soft_delete: Optional[bool] = None,
        limit: int = 50,
    ) -> List[UserActivity]:
        """
        Filtered activity listing for the admin audit view.

        A plain `date` as end_date includes the whole day.
        """
        stmt = select(UserActivity)
        if user_id is not None:
            stmt = stmt.where(UserActivity.user_id == user_id)
        if table_name:
            stmt = stmt.where(UserActivity.table_name == table_name)
        if action_type:
            stmt = stmt.where(UserActivity.action_type == ActionType(action_type).value)
        if start_date is not None:
            stmt = stmt.where(UserActivity.created_at >= _as_datetime(start_date))
        if end_date is not None:
            stmt = stmt.where(UserActivity.created_at <= _as_datetime(end_date, end_of_day=True))
        if is_soft_delete is True:
            stmt = stmt.where(UserActivity.is_soft_delete == True)  # noqa: E712
        elif is_soft_delete is False:
            stmt = stmt.where(
                or_(
                    UserActivity.is_soft_delete == False,  # noqa: E712
                    UserActivity.is_soft_delete.is_(None),
                )
            )
        stmt = stmt.order_by(UserActivity.created_at.desc(), UserActivity.id.desc()).limit(limit)

        with Session(self.engine) as s:
            return list(s.exec(stmt).all())

    def get_activity_statistics(self, days: int = 30) -> Dict[str, int]:
        """Counts per action type, distinct users and soft deletes over the last `days` days."""
        cutoff = utcnow() - timedelta(days=days)

        def _count_action(action: ActionType):
            return func.sum(case((UserActivity.action_type == action.value, 1), else_=0))

        stmt = select(
            func.count(UserActivity.id),
            func.count(func.distinct(UserActivity.user_id)),
            _count_action(ActionType.CREATE),
            _count_action(ActionType.UPDATE),
            _count_action(ActionType.DELETE),
            _count_action(ActionType.READ),
            func.sum(case((UserActivity.is_soft_delete == True, 1), else_=0)),  # noqa: E712
        ).where(UserActivity.created_at >= cutoff)

        with Session(self.engine) as s:
            row = s.exec(stmt).one()

        keys = ("total_activities", "unique_users", "creates", "updates",
                "deletes", "reads", "soft_deletes")
        return {key: int(value or 0) for key, value in zip(keys, row)}

    def get_training_audit_summary(self, days: int = 30) -> List[Dict[str, Any]]:
        """Activity counts per training table and action type over the last `days` days."""
        cutoff = utcnow() - timedelta(days=days)
        stmt = (
            select(
                UserActivity.table_name,
                UserActivity.action_type,
                func.count(UserActivity.id),
            )
            .where(UserActivity.table_name.like(TRAINING_TABLE_PATTERN))
            .where(UserActivity.created_at >= cutoff)
            .group_by(UserActivity.table_name, UserActivity.action_type)
            .order_by(UserActivity.table_name, UserActivity.action_type)
        )
        with Session(self.engine) as s:
            rows = s.exec(stmt).all()
        return [
            {"table_name": table, "action_type": action, "count": count}
            for table, action, count in rows
        ]

    def get_deleted_records(
        self,
        table_name: Optional[str] = None,
        limit: int = 50,
        include_expired: bool = False,
    ) -> List[DeletedRecord]:
        """Unrestored archive rows, newest first; expired ones only when asked."""
        stmt = select(DeletedRecord).where(DeletedRecord.is_restored == False)  # noqa: E712
        if table_name:
            stmt = stmt.where(DeletedRecord.table_name == table_name)
        if not include_expired:
            stmt = stmt.where(self._not_expired(utcnow()))
        stmt = stmt.order_by(DeletedRecord.deleted_at.desc()).limit(limit)

        with Session(self.engine) as s:
            return list(s.exec(stmt).all())

    def _not_expired(self, now: datetime):
        """SQL predicate: deleted_at + retention_period_days >= now."""
        if self.engine.dialect.name == "sqlite":
            return (
                func.julianday(DeletedRecord.deleted_at) + DeletedRecord.retention_period_days
                >= func.julianday(now)
            )
        retention = func.make_interval(0, 0, 0, DeletedRecord.retention_period_days, type_=Interval)
        return DeletedRecord.deleted_at + retention >= now


def _as_datetime(value: date, end_of_day: bool = False) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)


# ─── Request helpers ──────────────────────────────────────────────────────────

def get_client_ip(headers: Mapping[str, str]) -> str:
    """Client address from proxy headers, or "unknown"."""
    lowered = {key.lower(): value for key, value in headers.items()}
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = lowered.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return "unknown"


def get_user_data_from_session(session: Optional[Mapping[str, Any]]) -> AuditUser:
    """Pull the acting user out of a {"user": {"id", "username", "role"}} session."""
    user = (session or {}).get("user") or {}
    return AuditUser(
        user_id=user.get("id"),
        username=user.get("username"),
        user_role=user.get("role"),
    )
