"""
Tables eligible for primary → secondary replication.

SYNC_TABLES is the allowlist. EXCLUDED_TABLES lists tables that must never be
replicated (credentials, sessions, local-only permission config and audit
data). A table may appear in at most one of the two sets.
"""
from typing import Tuple

SYNC_TABLES: Tuple[str, ...] = (
    "tbl_tarl_schools",
    "tbl_tarl_students",
    "tbl_tarl_classes",
    "tbl_tarl_transcripts",
    "tbl_tarl_observations",
    "tbl_tarl_training_programs",
    "tbl_tarl_training_sessions",
    "tbl_tarl_training_participants",
    "tbl_tarl_learning_progress",
    "tbl_tarl_materials",
    "tbl_tarl_surveys",
    "tbl_tarl_school_registrations",
    # Geographic tables
    "tbl_tarl_demographics",
    "tbl_tarl_provinces",
    "tbl_tarl_districts",
    "tbl_tarl_communes",
    "tbl_tarl_villages",
)

EXCLUDED_TABLES: Tuple[str, ...] = (
    "tbl_tarl_users",  # password hashes
    "tbl_tarl_sessions",
    "page_permissions",
    "role_page_permissions",
    "tbl_tarl_permission_audit",  # audit data stays local
)

# Small lookup table used by DatabaseSynchronizer.test_sync()
TEST_SYNC_TABLE = "tbl_tarl_provinces"

_overlap = set(SYNC_TABLES) & set(EXCLUDED_TABLES)
if _overlap:
    raise RuntimeError(f"Tables both allowed and excluded from sync: {sorted(_overlap)}")


def is_syncable(table_name: str) -> bool:
    """Return True if `table_name` is on the replication allowlist."""
    return table_name in SYNC_TABLES
