"""
Cruise sync API routes.

Run control and history, feed checks, catalog coverage, stub review,
reference cache control and maintenance.
Error responses use the AppError envelope.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Query
from fastapi.responses import JSONResponse
import structlog

from config import settings
from exceptions import AppError, ValidationError
from models.catalog import CacheClearResult, CanonicalEntity, ReferenceCacheStats
from models.coverage import (
    CleanupPreview,
    CleanupResult,
    CoverageStats,
    PurgeResult,
    RawStorageStats,
    StubsReport,
)
from models.sync import (
    ConnectionTestResult,
    SyncHistoryResponse,
    SyncOptions,
    SyncRunResponse,
    SyncStatusResponse,
)
from services.coverage_service import get_coverage_service
from services.cruise_sync_service import get_cruise_sync_service
from services.feed_source import is_within
from services.entity_resolver import get_entity_resolver, parse_entity_type
from services.raw_archive_service import get_raw_archive_service
from services.sailing_upsert_service import get_sailing_upsert_service
from services.sync_run_service import get_sync_run_service

logger = structlog.get_logger(__name__)

router = APIRouter()


# ===================
# EXCEPTION HANDLER
# ===================

def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


# ===================
# SYNC RUNS
# ===================

@router.post("/sync", response_model=SyncRunResponse, status_code=202)
async def start_sync(background_tasks: BackgroundTasks, options: Optional[SyncOptions] = None):
    """
    Start a sync run.

    The run is created before responding; files are processed in the background.

    Raises:
        409: A sync is already running
        422: source_dir outside FEED_LOCAL_DIR
        503: Feed or storage unavailable
    """
    try:
        service = get_cruise_sync_service()
        options = options or SyncOptions()
        if options.source_dir and not is_within(settings.feed_local_dir, options.source_dir):
            raise ValidationError(
                "source_dir must be inside the configured feed directory",
                code="INVALID_SYNC_OPTIONS",
                details={"source_dir": options.source_dir}
            )
        run = service.start_run(options)
        background_tasks.add_task(service.execute, run)

        logger.info("sync_run_accepted", run_id=run.id)
        return run.to_response()

    except Exception as e:
        return handle_error(e)


@router.post("/sync/cancel", response_model=SyncRunResponse)
async def cancel_sync():
    """
    Request cancellation of the running sync.

    In-flight files finish; the run ends as cancelled.

    Raises:
        409: No sync is running
    """
    try:
        return get_sync_run_service().request_cancel()
    except Exception as e:
        return handle_error(e)


@router.get("/sync/status", response_model=SyncStatusResponse)
async def sync_status():
    """Current sync state with live metrics."""
    try:
        return get_sync_run_service().get_current_status()
    except Exception as e:
        return handle_error(e)


@router.get("/sync/history", response_model=SyncHistoryResponse)
async def sync_history(
    limit: int = Query(20, ge=1, le=100, description="Number of runs")
):
    """Recent runs, newest first, with truncated error lists."""
    try:
        return get_sync_run_service().get_history(limit=limit)
    except Exception as e:
        return handle_error(e)


@router.get("/sync/runs/{run_id}", response_model=SyncRunResponse)
async def get_sync_run(run_id: str):
    """
    One run with every captured error.

    Raises:
        404: Run not found
    """
    try:
        return get_sync_run_service().get_run(run_id)
    except Exception as e:
        return handle_error(e)


@router.get("/test-connection", response_model=ConnectionTestResult)
async def test_connection():
    """
    Check that the configured feed source can be listed.

    Skipped, and reported as such, while a sync is running.
    """
    try:
        return get_cruise_sync_service().test_connection()
    except Exception as e:
        return handle_error(e)

# ===================
# COVERAGE & STUBS
# ===================

@router.get("/coverage", response_model=CoverageStats)
async def coverage():
    """Catalog completeness per entity type."""
    try:
        return get_coverage_service().report()
    except Exception as e:
        return handle_error(e)


@router.get("/stubs", response_model=StubsReport)
async def stubs(
    limit: Optional[int] = Query(None, ge=1, le=500, description="Oldest stubs to list")
):
    """Stubs waiting for review."""
    try:
        return get_coverage_service().stubs_report(limit or settings.stubs_report_limit)
    except Exception as e:
        return handle_error(e)


@router.post("/entities/{entity_type}/{entity_id}/confirm", response_model=CanonicalEntity)
async def confirm_entity(entity_type: str, entity_id: str):
    """
    Mark a canonical entity as reviewed.

    Raises:
        422: Unknown entity type
        404: Entity not found
    """
    try:
        return get_entity_resolver().confirm(parse_entity_type(entity_type), entity_id)
    except Exception as e:
        return handle_error(e)


@router.get("/cache-stats", response_model=ReferenceCacheStats)
async def cache_stats():
    """Reference id cache entries per type and hit rate."""
    try:
        return get_entity_resolver().cache_stats()
    except Exception as e:
        return handle_error(e)


@router.post("/cache/clear", response_model=CacheClearResult)
async def clear_cache():
    """Drop every cached reference id. The next lookups go to the database."""
    try:
        return CacheClearResult(entries_dropped=get_entity_resolver().clear_cache())
    except Exception as e:
        return handle_error(e)

# ===================
# MAINTENANCE
# ===================

@router.get("/maintenance/cleanup/preview", response_model=CleanupPreview)
async def cleanup_preview(
    days_buffer: int = Query(0, ge=0, le=365, description="Keep sailings that ended this many days ago")
):
    """Sailings a cleanup would delete."""
    try:
        return get_sailing_upsert_service().preview_cleanup(days_buffer)
    except Exception as e:
        return handle_error(e)


@router.post("/maintenance/cleanup", response_model=CleanupResult)
async def cleanup(
    days_buffer: int = Query(0, ge=0, le=365, description="Keep sailings that ended this many days ago")
):
    """Delete sailings that ended before the cutoff. Children cascade."""
    try:
        return get_sailing_upsert_service().cleanup_past_sailings(days_buffer)
    except Exception as e:
        return handle_error(e)


@router.post("/maintenance/purge-raw", response_model=PurgeResult)
async def purge_raw():
    """Delete expired raw feed archives."""
    try:
        return get_raw_archive_service().purge_expired()
    except Exception as e:
        return handle_error(e)


@router.get("/storage-stats", response_model=RawStorageStats)
async def storage_stats():
    """Raw archive totals: all, expired, and expiring within 24 hours."""
    try:
        return get_raw_archive_service().storage_stats()
    except Exception as e:
        return handle_error(e)
