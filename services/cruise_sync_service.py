"""
Cruise sync orchestration.

Runs one sync over the files of a feed source: read, validate, resolve,
upsert, per file, on a bounded worker pool. Record-level failures are
captured on the run and the loop continues; run-fatal failures end the run
as failed. Cancellation is checked before each file is submitted.
"""

import json
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import structlog

from config import settings
from exceptions import (
    FeedParseError,
    FeedRecordError,
    FeedValidationError,
    OversizedFeedFileError,
    StorageUnavailableError,
    SyncFatalError,
    UnexpectedRecordError,
)
from integrations.telegram import (
    format_error_streak_message,
    format_sync_failed_message,
    notify_operator,
)
from models.feed import external_id
from models.sync import ConnectionTestResult, SyncOptions, SyncRunResponse, SyncStatus
from services.entity_resolver import EntityResolver, get_entity_resolver
from services.feed_file_service import FeedFileService, content_hash, get_feed_file_service
from services.feed_source import FeedFile, FeedSource, build_feed_source
from services.feed_validator import validate
from services.raw_archive_service import RawArchiveService, get_raw_archive_service
from services.sailing_upsert_service import SailingUpsertService, get_sailing_upsert_service
from services.sync_run_service import ActiveSyncRun, SyncRunService, get_sync_run_service

logger = structlog.get_logger(__name__)


@dataclass
class FileOutcome:
    """What happened to one feed file."""
    path: str
    status: str  # succeeded | validated | unchanged | failed
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"


class ErrorStreak:
    """Counts consecutive failed files; signals once when the threshold is reached."""

    def __init__(self, threshold: int):
        self.threshold = threshold
        self.count = 0
        self.alerted = False

    def observe(self, outcome: FileOutcome) -> bool:
        if not outcome.failed:
            self.count = 0
            return False
        self.count += 1
        if self.count >= self.threshold and not self.alerted:
            self.alerted = True
            return True
        return False


class CruiseSyncService:
    """
    Sync orchestrator.

    Collaborators are injectable so tests can swap the feed source.
    """

    def __init__(
        self,
        tracker: Optional[SyncRunService] = None,
        resolver: Optional[EntityResolver] = None,
        upserter: Optional[SailingUpsertService] = None,
        feed_files: Optional[FeedFileService] = None,
        raw_archive: Optional[RawArchiveService] = None,
        source_factory: Callable[[SyncOptions], FeedSource] = build_feed_source,
    ):
        self.tracker = tracker or get_sync_run_service()
        self.resolver = resolver or get_entity_resolver()
        self.upserter = upserter or get_sailing_upsert_service()
        self.feed_files = feed_files or get_feed_file_service()
        self.raw_archive = raw_archive or get_raw_archive_service()
        self.source_factory = source_factory

    def start_run(self, options: Optional[SyncOptions] = None) -> ActiveSyncRun:
        """Claim the single-writer slot. Raises SyncAlreadyRunningError."""
        return self.tracker.start(options or SyncOptions())

    def run(self, options: Optional[SyncOptions] = None) -> SyncRunResponse:
        """Start and execute a run synchronously (CLI)."""
        return self.execute(self.start_run(options))

    def execute(self, run: ActiveSyncRun) -> SyncRunResponse:
        """
        Process every file of the run's feed source and finalize the run.

        Returns:
            Finalized run (completed, cancelled or failed)
        """
        options = run.options

        try:
            source = self.source_factory(options)
            files = source.list_files(options.files or None)
            run.add_files_found(len(files))
            self.resolver.reset_cache_stats()
            logger.info(
                "sync_run_processing",
                run_id=run.id,
                source=source.describe(),
                files=len(files),
                dry_run=options.dry_run,
                delta=options.delta
            )
            cancelled = self._process_files(run, source, files)

        except SyncFatalError as e:
            logger.error("sync_run_fatal", run_id=run.id, code=e.code, error=e.message)
            run.fatal_exception = e
            return self._fail(run, e.message)

        except Exception as e:
            logger.error(
                "sync_run_crashed",
                run_id=run.id,
                error=str(e),
                error_type=type(e).__name__
            )
            run.fatal_exception = e
            return self._fail(run, f"Unexpected error: {type(e).__name__}: {e}")

        cache = self.resolver.cache_stats()
        logger.info(
            "reference_cache_stats",
            run_id=run.id,
            entries=cache.total_entries,
            hits=cache.hits,
            misses=cache.misses,
            hit_rate=cache.hit_rate
        )
        status = SyncStatus.CANCELLED if cancelled else SyncStatus.COMPLETED
        return self.tracker.finalize(run, status)

    def test_connection(self) -> ConnectionTestResult:
        """
        List the configured feed source without syncing anything.

        Skipped while a sync is running, so the check never competes with it
        for the feed.
        """
        now = datetime.now(timezone.utc)
        if self.tracker.get_sync_state().in_progress:
            logger.info("feed_connection_test_skipped", reason="sync_in_progress")
            return ConnectionTestResult(
                success=True,
                skipped=True,
                source=settings.feed_source,
                message="Sync in progress; connection test skipped",
                checked_at=now,
            )

        source_name = settings.feed_source
        try:
            source = self.source_factory(SyncOptions())
            source_name = source.describe()
            files = source.list_files()
        except SyncFatalError as e:
            logger.warning("feed_connection_test_failed", source=source_name, code=e.code, error=e.message)
            return ConnectionTestResult(success=False, source=source_name, message=e.message, checked_at=now)

        logger.info("feed_connection_test_passed", source=source_name, files=len(files))
        return ConnectionTestResult(
            success=True,
            source=source_name,
            files_found=len(files),
            message=f"{len(files)} feed files available",
            checked_at=now,
        )

    def _fail(self, run: ActiveSyncRun, message: str) -> SyncRunResponse:
        result = self.tracker.finalize(run, SyncStatus.FAILED, fatal_error=message)
        notify_operator(format_sync_failed_message(run.id, message, result.metrics))
        return result

    def _process_files(self, run: ActiveSyncRun, source: FeedSource, files: list[FeedFile]) -> bool:
        """
        Feed files to the worker pool, at most `concurrency` in flight.

        Returns:
            True if the run stopped early because cancellation was requested
        """
        concurrency = run.options.concurrency or settings.sync_concurrency
        streak = ErrorStreak(settings.sync_alert_consecutive_errors)
        pending = iter(files)
        in_flight: dict[Future, FeedFile] = {}
        cancelled = False

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="cruise-sync") as pool:
            while True:
                while len(in_flight) < concurrency and not cancelled:
                    if run.cancel_requested:
                        cancelled = True
                        logger.info("sync_run_cancelling", run_id=run.id, in_flight=len(in_flight))
                        break
                    feed_file = next(pending, None)
                    if feed_file is None:
                        break
                    in_flight[pool.submit(self.process_file, run, source, feed_file)] = feed_file

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    in_flight.pop(future)
                    # Run-fatal errors propagate; the pool waits for in-flight files on exit
                    outcome = future.result()
                    if streak.observe(outcome):
                        logger.warning("sync_error_streak", run_id=run.id, consecutive=streak.count)
                        notify_operator(format_error_streak_message(run.id, streak.count, outcome.error or ""))

        return cancelled

    def process_file(self, run: ActiveSyncRun, source: FeedSource, feed_file: FeedFile) -> FileOutcome:
        """
        Ingest one file. Record-level errors, and anything unexpected raised
        while handling this file, are captured on the run.

        Raises:
            SyncFatalError: The run cannot continue
        """
        path = feed_file.path
        options = run.options
        max_bytes = settings.sync_max_file_bytes
        file_hash = ""

        try:
            if feed_file.size is not None and feed_file.size > max_bytes:
                raise OversizedFeedFileError(f"File is {feed_file.size} bytes (limit {max_bytes})")

            content = source.read(feed_file)
            if len(content) > max_bytes:
                raise OversizedFeedFileError(f"File is {len(content)} bytes (limit {max_bytes})")

            file_hash = content_hash(content)
            if options.delta and self.feed_files.is_unchanged(path, file_hash):
                run.record_unchanged(path)
                return FileOutcome(path=path, status="unchanged")

            try:
                raw = json.loads(content)
            except ValueError as e:
                raise FeedParseError(f"Invalid JSON: {e}")
            if not isinstance(raw, dict):
                raise FeedParseError(f"Expected a JSON object, got {type(raw).__name__}")

            result = validate(raw)
            if not result.ok:
                raise FeedValidationError(
                    result.summary() or "Record failed validation",
                    sailing_external_id=external_id(raw.get("cruiseid")),
                    details={"errors": [e.model_dump() for e in result.rejections]}
                )
            record = result.record

            if options.dry_run:
                run.record_validated(path, repairs=len(result.repairs))
                return FileOutcome(path=path, status="validated")

            refs = self.resolver.resolve_refs(record)
            upserted = self.upserter.upsert(record, refs)
            self.raw_archive.archive(record.external_id, path, raw, run.id)
            self.feed_files.record_synced(path, file_hash, run.id, size_bytes=len(content))

            run.record_success(
                path,
                upserted.created,
                stubs_created=refs.stubs_created,
                repairs=len(result.repairs)
            )
            return FileOutcome(path=path, status="succeeded")

        except FeedRecordError as e:
            return self._record_failure(run, path, e, file_hash)

        except SyncFatalError:
            raise

        except httpx.TransportError as e:
            raise StorageUnavailableError(f"Database unreachable while syncing {path}: {e}")

        except Exception as e:
            logger.error(
                "feed_file_crashed",
                run_id=run.id,
                file_path=path,
                error=str(e),
                error_type=type(e).__name__
            )
            return self._record_failure(
                run, path, UnexpectedRecordError(f"{type(e).__name__}: {e}"), file_hash
            )

    def _record_failure(
        self,
        run: ActiveSyncRun,
        path: str,
        error: FeedRecordError,
        file_hash: str,
    ) -> FileOutcome:
        run.record_failure(path, error.error_type, error.message, error.sailing_external_id)
        if not run.options.dry_run:
            self.feed_files.record_failed(path, run.id, error.message, file_hash)
        return FileOutcome(path=path, status="failed", error=error.message)


# Singleton instance
_cruise_sync_service: Optional[CruiseSyncService] = None


def get_cruise_sync_service() -> CruiseSyncService:
    """Get or create CruiseSyncService instance."""
    global _cruise_sync_service
    if _cruise_sync_service is None:
        _cruise_sync_service = CruiseSyncService()
    return _cruise_sync_service
