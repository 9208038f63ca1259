"""Synchronization config, result and status models."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from tarl.config import Settings

SyncMode = Literal["real-time", "batch", "manual"]


class SyncConfig(BaseModel):
    enabled: bool = True
    mode: SyncMode = "real-time"
    batch_interval: int = Field(default=5, ge=1)  # minutes
    retry_attempts: int = Field(default=3, ge=1)  # total attempts per real-time operation
    retry_delay: int = Field(default=1000, ge=0)  # milliseconds
    batch_size: int = Field(default=100, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncConfig":
        return cls(
            enabled=settings.sync_enabled,
            mode=settings.sync_mode,
            batch_interval=settings.sync_batch_interval,
            retry_attempts=settings.sync_retry_attempts,
            retry_delay=settings.sync_retry_delay,
            batch_size=settings.sync_batch_size,
        )


class TableSyncResult(BaseModel):
    table_name: str
    record_count: int


class TableFailure(BaseModel):
    table: str
    error: str


class SyncDetails(BaseModel):
    successful: List[str] = Field(default_factory=list)
    failed: List[TableFailure] = Field(default_factory=list)
    total_records: int = 0


class SyncSummary(BaseModel):
    """One full-sync run, kept in the in-memory sync log."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    successful: int = 0
    failed: int = 0
    total_records: int = 0
    details: SyncDetails = Field(default_factory=SyncDetails)


class SyncRunResult(BaseModel):
    success: bool
    summary: SyncSummary


class SyncOperationResult(BaseModel):
    success: bool
    error: Optional[str] = None
    skipped: bool = False


class SyncStatus(BaseModel):
    is_running: bool
    config: SyncConfig
    last_sync: Optional[SyncSummary] = None
    sync_log: List[SyncSummary] = Field(default_factory=list)


class SyncCheckResult(BaseModel):
    success: bool
    message: str


class SchemaDifference(BaseModel):
    table: str
    primary: List[Dict[str, Any]]
    secondary: List[Dict[str, Any]]


class SchemaComparison(BaseModel):
    matching: List[str] = Field(default_factory=list)
    missing_in_secondary: List[str] = Field(default_factory=list)
    differences: List[SchemaDifference] = Field(default_factory=list)
