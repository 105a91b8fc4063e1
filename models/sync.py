"""
Sync run schemas.

A sync run moves running -> completed | failed | cancelled exactly once.
"""

from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath, PureWindowsPath
from typing import Optional, Any

from pydantic import BaseModel, Field, computed_field, field_validator

from models.base import BaseSchema


class SyncStatus(str, Enum):
    """Sync run status values."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_SYNC_STATUSES = frozenset({
    SyncStatus.COMPLETED,
    SyncStatus.FAILED,
    SyncStatus.CANCELLED,
})


def is_valid_sync_transition(current: SyncStatus, new: SyncStatus) -> bool:
    """
    Check if a sync run status transition is valid.

    Rules:
    - Only a running run can move, and only to a terminal status
    - Terminal statuses have no exits
    """
    return current == SyncStatus.RUNNING and new in TERMINAL_SYNC_STATUSES


class SyncErrorType(str, Enum):
    """error_type values stored on sync errors."""
    PARSE_ERROR = "parse_error"
    OVERSIZED = "oversized"
    VALIDATION_ERROR = "validation_error"
    REFERENCE_ERROR = "reference_error"
    UPSERT_ERROR = "upsert_error"
    DOWNLOAD_FAILED = "download_failed"
    UNEXPECTED_ERROR = "unexpected_error"


class SyncOptions(BaseSchema):
    """Options for one sync run (API body and CLI flags)."""

    source_dir: Optional[str] = Field(
        None,
        description="Local feed directory (defaults to FEED_LOCAL_DIR)"
    )
    files: list[str] = Field(
        default_factory=list,
        description="Only these feed files, relative to the source"
    )
    dry_run: bool = Field(
        False,
        description="List and validate files without writing sailings"
    )
    delta: bool = Field(
        False,
        description="Skip files unchanged since their last successful sync"
    )
    concurrency: Optional[int] = Field(
        None,
        ge=1,
        le=16,
        description="Worker count (defaults to SYNC_CONCURRENCY)"
    )

    @field_validator("files")
    @classmethod
    def check_files(cls, v):
        # Feed files are addressed relative to the source root and never leave it
        for entry in v:
            windows = PureWindowsPath(entry)
            if PurePosixPath(entry).is_absolute() or windows.drive or windows.root:
                raise ValueError(f"feed file must be relative to the source: {entry}")
            if ".." in windows.parts:
                raise ValueError(f"feed file must not leave the source: {entry}")
        return v


class SyncMetrics(BaseModel):
    """Counters persisted on the run row."""
    files_found: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    files_unchanged: int = 0
    sailings_upserted: int = 0
    sailings_created: int = 0
    sailings_updated: int = 0
    stubs_created: int = 0
    records_repaired: int = 0


class SyncErrorEntry(BaseSchema):
    """One per-file error captured during a run."""
    id: Optional[str] = None
    run_id: str
    file_path: Optional[str] = None
    error_type: str
    message: str
    sailing_external_id: Optional[str] = None
    created_at: Optional[datetime] = None


class SyncRunResponse(BaseSchema):
    """Sync run with its (possibly truncated) error list."""

    id: str
    status: SyncStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    options: dict[str, Any] = Field(default_factory=dict)
    metrics: SyncMetrics = Field(default_factory=SyncMetrics)
    error_count: int = 0
    fatal_error: Optional[str] = None
    cancel_requested: bool = False
    errors: list[SyncErrorEntry] = Field(default_factory=list)
    errors_truncated: bool = False

    @computed_field
    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class SyncStatusResponse(BaseModel):
    """Current sync state for the operator dashboard."""
    in_progress: bool
    cancel_requested: bool = False
    current_run: Optional[SyncRunResponse] = None
    last_run: Optional[SyncRunResponse] = None


class SyncHistoryResponse(BaseModel):
    runs: list[SyncRunResponse]
    error_limit: int


class SyncState(BaseModel):
    """What search needs to know about ingestion."""
    in_progress: bool = False
    started_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class ConnectionTestResult(BaseModel):
    """Outcome of a feed connectivity check."""
    success: bool
    skipped: bool = Field(False, description="Not attempted because a sync is running")
    source: str
    files_found: Optional[int] = None
    message: Optional[str] = None
    checked_at: datetime
