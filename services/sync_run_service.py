"""
Sync run tracker.

Owns the lifecycle of ingestion runs: single-writer start, thread-safe
metric updates, append-only error capture, cooperative cancellation and
exactly-once finalization. Also answers status and history queries.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from postgrest.exceptions import APIError

from config import fetch_all, get_supabase_client, settings
from exceptions import (
    DatabaseError,
    InvalidStatusTransitionError,
    NoActiveSyncError,
    StorageUnavailableError,
    SyncAlreadyRunningError,
    SyncRunNotFoundError,
)
from models.sync import (
    SyncErrorEntry,
    SyncHistoryResponse,
    SyncMetrics,
    SyncOptions,
    SyncRunResponse,
    SyncState,
    SyncStatus,
    SyncStatusResponse,
    is_valid_sync_transition,
)

logger = structlog.get_logger(__name__)

UNIQUE_VIOLATION = "23505"
INVALID_TEXT_REPRESENTATION = "22P02"

# Cross-process cancel requests are read from the run row at most this often
CANCEL_POLL_SECONDS = 5.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ActiveSyncRun:
    """
    Live handle for the run this process owns.

    Worker threads report outcomes through it. Counter updates happen under
    a lock and every outcome is flushed to the run row at once, so the
    dashboard sees progress file by file.
    """

    def __init__(self, tracker: "SyncRunService", run_id: str, started_at: datetime, options: SyncOptions):
        self.id = run_id
        self.started_at = started_at
        self.options = options
        self.status = SyncStatus.RUNNING
        self.metrics = SyncMetrics()
        self.error_count = 0
        self._tracker = tracker
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self.fatal_exception: Optional[Exception] = None
        self._cancel = threading.Event()
        self._last_cancel_poll = time.monotonic()

    # ----- outcomes -----

    def add_files_found(self, count: int) -> None:
        with self._lock:
            self.metrics.files_found += count
        self._flush()

    def record_success(
        self,
        file_path: str,
        created: bool,
        stubs_created: int = 0,
        repairs: int = 0
    ) -> None:
        """One file ingested."""
        with self._lock:
            self.metrics.files_processed += 1
            self.metrics.sailings_upserted += 1
            if created:
                self.metrics.sailings_created += 1
            else:
                self.metrics.sailings_updated += 1
            self.metrics.stubs_created += stubs_created
            self.metrics.records_repaired += repairs
        logger.debug("sync_file_succeeded", run_id=self.id, file_path=file_path, created=created)
        self._flush()

    def record_validated(self, file_path: str, repairs: int = 0) -> None:
        """One file validated by a dry run (nothing written)."""
        with self._lock:
            self.metrics.files_processed += 1
            self.metrics.records_repaired += repairs
        logger.debug("sync_file_validated", run_id=self.id, file_path=file_path)
        self._flush()

    def record_failure(
        self,
        file_path: str,
        error_type: str,
        message: str,
        sailing_external_id: Optional[str] = None
    ) -> None:
        """One file skipped; the error row is appended before counters move."""
        self._tracker._append_error(self, SyncErrorEntry(
            run_id=self.id,
            file_path=file_path,
            error_type=error_type,
            message=message,
            sailing_external_id=sailing_external_id,
        ))
        with self._lock:
            self.metrics.files_skipped += 1
            self.error_count += 1
        logger.info(
            "sync_file_failed",
            run_id=self.id,
            file_path=file_path,
            error_type=error_type,
            error=message[:200]
        )
        self._flush()

    def record_unchanged(self, file_path: str) -> None:
        """Delta sync skipped a file whose content hash did not change."""
        with self._lock:
            self.metrics.files_unchanged += 1
        logger.debug("sync_file_unchanged", run_id=self.id, file_path=file_path)
        self._flush()

    def record_repairs(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self.metrics.records_repaired += count
        self._flush()

    # ----- cancellation -----

    def request_cancel(self) -> None:
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        """Checked at file boundaries; also picks up requests made by other processes."""
        if self._cancel.is_set():
            return True
        if time.monotonic() - self._last_cancel_poll >= CANCEL_POLL_SECONDS:
            self._last_cancel_poll = time.monotonic()
            if self._tracker._cancel_flag_set(self.id):
                self._cancel.set()
        return self._cancel.is_set()

    # ----- persistence -----

    def snapshot(self) -> tuple[SyncMetrics, int]:
        with self._lock:
            return self.metrics.model_copy(), self.error_count

    def _flush(self) -> None:
        # Snapshot inside the flush lock so rows are written in progress order
        with self._flush_lock:
            metrics, error_count = self.snapshot()
            self._tracker._write_progress(self, metrics, error_count)

    def to_response(self) -> SyncRunResponse:
        metrics, error_count = self.snapshot()
        return SyncRunResponse(
            id=self.id,
            status=self.status,
            started_at=self.started_at,
            options=self.options.model_dump(),
            metrics=metrics,
            error_count=error_count,
            cancel_requested=self._cancel.is_set(),
        )


class SyncRunService:
    """
    Sync run persistence and queries.

    Only this service writes cruise_sync_runs and cruise_sync_errors.
    """

    def __init__(self):
        self.db = get_supabase_client()
        self.runs_table = "cruise_sync_runs"
        self.errors_table = "cruise_sync_errors"
        self._lock = threading.Lock()
        self._active: Optional[ActiveSyncRun] = None

    @property
    def active_run(self) -> Optional[ActiveSyncRun]:
        return self._active

    # ===================
    # LIFECYCLE
    # ===================

    def start(self, options: Optional[SyncOptions] = None) -> ActiveSyncRun:
        """
        Start a run. Single-writer.

        Guarded by an in-process lock, a check for a running row, and a
        partial unique index on status='running' that catches a second
        process racing past the check.

        Raises:
            SyncAlreadyRunningError: A run is already running
        """
        options = options or SyncOptions()

        with self._lock:
            if self._active is not None:
                raise SyncAlreadyRunningError(self._active.id)

            self._expire_stale_runs()

            running = (
                self.db.table(self.runs_table)
                .select("id")
                .eq("status", SyncStatus.RUNNING.value)
                .limit(1)
                .execute()
            )
            if running.data:
                raise SyncAlreadyRunningError(running.data[0]["id"])

            started_at = _now()
            try:
                result = (
                    self.db.table(self.runs_table)
                    .insert({
                        "status": SyncStatus.RUNNING.value,
                        "started_at": started_at.isoformat(),
                        "updated_at": started_at.isoformat(),
                        "options": options.model_dump(),
                        "metrics": SyncMetrics().model_dump(),
                        "error_count": 0,
                        "cancel_requested": False,
                    })
                    .execute()
                )
            except APIError as e:
                if e.code == UNIQUE_VIOLATION:
                    raise SyncAlreadyRunningError()
                logger.error("sync_run_start_failed", error=e.message)
                raise DatabaseError("insert", e.message)

            run = ActiveSyncRun(self, result.data[0]["id"], started_at, options)
            self._active = run

        logger.info(
            "sync_run_started",
            run_id=run.id,
            dry_run=options.dry_run,
            delta=options.delta,
            files=len(options.files)
        )
        return run

    def _expire_stale_runs(self) -> None:
        """Fail running rows whose owner stopped reporting (crashed process)."""
        cutoff = _now() - timedelta(minutes=settings.sync_stale_run_minutes)
        stale = (
            self.db.table(self.runs_table)
            .select("id, updated_at")
            .eq("status", SyncStatus.RUNNING.value)
            .lt("updated_at", cutoff.isoformat())
            .execute()
        )
        for row in stale.data or []:
            (
                self.db.table(self.runs_table)
                .update({
                    "status": SyncStatus.FAILED.value,
                    "completed_at": _now().isoformat(),
                    "fatal_error": f"Abandoned: no progress since {row['updated_at']}",
                })
                .eq("id", row["id"])
                .eq("status", SyncStatus.RUNNING.value)
                .execute()
            )
            logger.warning("sync_run_abandoned", run_id=row["id"], last_update=row["updated_at"])

    def finalize(
        self,
        run: ActiveSyncRun,
        status: SyncStatus,
        fatal_error: Optional[str] = None
    ) -> SyncRunResponse:
        """
        Move a run to a terminal status. Exactly once per run.

        Raises:
            InvalidStatusTransitionError: Run already finalized or target not terminal
        """
        with self._lock:
            if not is_valid_sync_transition(run.status, status):
                raise InvalidStatusTransitionError(run.status.value, status.value)
            run.status = status
            if self._active is run:
                self._active = None

        metrics, error_count = run.snapshot()
        completed_at = _now()

        try:
            (
                self.db.table(self.runs_table)
                .update({
                    "status": status.value,
                    "completed_at": completed_at.isoformat(),
                    "updated_at": completed_at.isoformat(),
                    "metrics": metrics.model_dump(),
                    "error_count": error_count,
                    "fatal_error": fatal_error,
                })
                .eq("id", run.id)
                .eq("status", SyncStatus.RUNNING.value)
                .execute()
            )
        except Exception as e:
            logger.error("sync_run_finalize_failed", run_id=run.id, status=status.value, error=str(e))
            raise DatabaseError("update", str(e), {"run_id": run.id})

        logger.info(
            "sync_run_finalized",
            run_id=run.id,
            status=status.value,
            files_processed=metrics.files_processed,
            files_skipped=metrics.files_skipped,
            errors=error_count,
            fatal_error=fatal_error
        )

        response = run.to_response()
        response.completed_at = completed_at
        response.fatal_error = fatal_error
        return response

    def request_cancel(self) -> SyncRunResponse:
        """
        Ask the running run to stop at the next file boundary.

        Works for runs owned by another process through the cancel flag.

        Raises:
            NoActiveSyncError: Nothing is running
        """
        active = self._active
        if active is not None:
            active.request_cancel()
            run_id = active.id
        else:
            running = (
                self.db.table(self.runs_table)
                .select("id")
                .eq("status", SyncStatus.RUNNING.value)
                .limit(1)
                .execute()
            )
            if not running.data:
                raise NoActiveSyncError()
            run_id = running.data[0]["id"]

        result = (
            self.db.table(self.runs_table)
            .update({"cancel_requested": True})
            .eq("id", run_id)
            .execute()
        )
        logger.info("sync_cancel_requested", run_id=run_id, owned=active is not None)

        if active is not None:
            return active.to_response()
        return self._row_to_response(result.data[0]) if result.data else self.get_run(run_id)

    # ----- called by ActiveSyncRun -----

    def _write_progress(self, run: ActiveSyncRun, metrics: SyncMetrics, error_count: int) -> None:
        try:
            (
                self.db.table(self.runs_table)
                .update({
                    "metrics": metrics.model_dump(),
                    "error_count": error_count,
                    "updated_at": _now().isoformat(),
                })
                .eq("id", run.id)
                .execute()
            )
        except Exception as e:
            logger.error("sync_progress_write_failed", run_id=run.id, error=str(e))
            raise StorageUnavailableError(f"Failed to persist sync progress: {e}")

    def _append_error(self, run: ActiveSyncRun, error: SyncErrorEntry) -> None:
        try:
            (
                self.db.table(self.errors_table)
                .insert(error.model_dump(exclude={"id", "created_at"}))
                .execute()
            )
        except Exception as e:
            logger.error("sync_error_write_failed", run_id=run.id, error=str(e))
            raise StorageUnavailableError(f"Failed to persist sync error: {e}")

    def _cancel_flag_set(self, run_id: str) -> bool:
        try:
            result = (
                self.db.table(self.runs_table)
                .select("cancel_requested")
                .eq("id", run_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning("sync_cancel_poll_failed", run_id=run_id, error=str(e))
            return False
        return bool(result.data and result.data[0].get("cancel_requested"))

    # ===================
    # QUERIES
    # ===================

    def _row_to_response(self, row: dict, errors: Optional[list[dict]] = None, truncated: bool = False) -> SyncRunResponse:
        """Convert database row to SyncRunResponse."""
        return SyncRunResponse(
            id=row["id"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
            options=row.get("options") or {},
            metrics=SyncMetrics(**(row.get("metrics") or {})),
            error_count=row.get("error_count") or 0,
            fatal_error=row.get("fatal_error"),
            cancel_requested=bool(row.get("cancel_requested")),
            errors=[SyncErrorEntry(**e) for e in errors or []],
            errors_truncated=truncated,
        )

    def get_current_status(self) -> SyncStatusResponse:
        """Running run (live metrics when this process owns it) and the last finished run."""
        active = self._active

        latest = (
            self.db.table(self.runs_table)
            .select("*")
            .order("started_at", desc=True)
            .limit(2)
            .execute()
        )
        rows = latest.data or []

        current = None
        if active is not None:
            current = active.to_response()
        elif rows and rows[0]["status"] == SyncStatus.RUNNING.value:
            current = self._row_to_response(rows[0])

        last_row = next((r for r in rows if r["status"] != SyncStatus.RUNNING.value), None)

        return SyncStatusResponse(
            in_progress=current is not None,
            cancel_requested=current.cancel_requested if current else False,
            current_run=current,
            last_run=self._row_to_response(last_row) if last_row else None,
        )

    def get_sync_state(self) -> SyncState:
        """Latest run state for search. Reads only the newest rows."""
        active = self._active
        if active is not None:
            last = self._last_completed_at()
            return SyncState(in_progress=True, started_at=active.started_at, last_synced_at=last)

        latest = (
            self.db.table(self.runs_table)
            .select("status, started_at, completed_at")
            .order("started_at", desc=True)
            .limit(1)
            .execute()
        )
        if not latest.data:
            return SyncState()

        row = latest.data[0]
        if row["status"] == SyncStatus.RUNNING.value:
            return SyncState(
                in_progress=True,
                started_at=row["started_at"],
                last_synced_at=self._last_completed_at(),
            )
        return SyncState(
            in_progress=False,
            last_synced_at=row.get("completed_at") if row["status"] == SyncStatus.COMPLETED.value
            else self._last_completed_at(),
        )

    def _last_completed_at(self) -> Optional[str]:
        result = (
            self.db.table(self.runs_table)
            .select("completed_at")
            .eq("status", SyncStatus.COMPLETED.value)
            .order("completed_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0]["completed_at"] if result.data else None

    def get_history(self, limit: int = 20) -> SyncHistoryResponse:
        """
        Recent runs, newest first, each with at most sync_history_error_limit errors.

        Storage keeps every error; use get_run for the full list.
        """
        error_limit = settings.sync_history_error_limit

        runs = (
            self.db.table(self.runs_table)
            .select("*")
            .order("started_at", desc=True)
            .limit(limit)
            .execute()
        )
        rows = runs.data or []

        responses = []
        for row in rows:
            errors = []
            if row.get("error_count"):
                errors = (
                    self.db.table(self.errors_table)
                    .select("*")
                    .eq("run_id", row["id"])
                    .order("created_at")
                    .limit(error_limit)
                    .execute()
                ).data or []
            truncated = (row.get("error_count") or 0) > len(errors)
            responses.append(self._row_to_response(row, errors, truncated))

        return SyncHistoryResponse(runs=responses, error_limit=error_limit)

    def get_run(self, run_id: str) -> SyncRunResponse:
        """
        One run with its full error list.

        Raises:
            SyncRunNotFoundError: Unknown run id
        """
        try:
            result = (
                self.db.table(self.runs_table)
                .select("*")
                .eq("id", run_id)
                .limit(1)
                .execute()
            )
        except APIError as e:
            if e.code == INVALID_TEXT_REPRESENTATION:
                raise SyncRunNotFoundError(run_id)
            raise

        if not result.data:
            raise SyncRunNotFoundError(run_id)

        row = result.data[0]
        if self._active is not None and self._active.id == run_id:
            response = self._active.to_response()
            response.errors = self.get_errors(run_id)
            return response

        return self._row_to_response(row, [e.model_dump() for e in self.get_errors(run_id)])

    def get_errors(self, run_id: str) -> list[SyncErrorEntry]:
        """Every error captured for a run, oldest first."""
        rows = fetch_all(
            lambda: self.db.table(self.errors_table)
            .select("*")
            .eq("run_id", run_id)
            .order("created_at")
        )
        return [SyncErrorEntry(**row) for row in rows]


# Singleton instance
_sync_run_service: Optional[SyncRunService] = None


def get_sync_run_service() -> SyncRunService:
    """Get or create SyncRunService instance."""
    global _sync_run_service
    if _sync_run_service is None:
        _sync_run_service = SyncRunService()
    return _sync_run_service
