"""
Run a cruise catalog sync from the command line.

Usage:
    # Full sync from the configured feed source
    python scripts/run_cruise_sync.py

    # Local directory, only changed files, 8 workers
    python scripts/run_cruise_sync.py --source-dir data/traveltek --delta --concurrency 8

    # Validate two files without writing anything
    python scripts/run_cruise_sync.py --file 2030/01/7/1234/98765.json --file 2030/01/7/1234/98766.json --dry-run

Exit codes: 0 completed, 1 failed, 2 another sync is running, 3 cancelled.
"""

import argparse
import os
import sys

# Allow imports from the project root when running as a script
_backend_dir = os.path.join(os.path.dirname(__file__), "..")
sys.path.insert(0, _backend_dir)

from dotenv import load_dotenv
load_dotenv(os.path.join(_backend_dir, ".env"))

import structlog  # noqa: E402

from config import configure_logging  # noqa: E402
from exceptions import SyncAlreadyRunningError  # noqa: E402
from models.sync import SyncOptions, SyncRunResponse, SyncStatus  # noqa: E402
from services.cruise_sync_service import get_cruise_sync_service  # noqa: E402

logger = structlog.get_logger(__name__)

EXIT_CODES = {
    SyncStatus.COMPLETED: 0,
    SyncStatus.FAILED: 1,
    SyncStatus.CANCELLED: 3,
}


def print_summary(run: SyncRunResponse) -> None:
    m = run.metrics
    print("=" * 60)
    print(f"SYNC {run.status.value.upper()}  run={run.id}")
    print("=" * 60)
    print(f"Files found:        {m.files_found}")
    print(f"Files processed:    {m.files_processed}")
    print(f"Files unchanged:    {m.files_unchanged}")
    print(f"Files skipped:      {m.files_skipped}")
    print(f"Sailings upserted:  {m.sailings_upserted} ({m.sailings_created} new, {m.sailings_updated} updated)")
    print(f"Stubs created:      {m.stubs_created}")
    print(f"Records repaired:   {m.records_repaired}")
    if run.duration_seconds is not None:
        print(f"Duration:           {run.duration_seconds:.1f}s")
    if run.fatal_error:
        print(f"\nFATAL: {run.fatal_error}")
    if run.error_count:
        print(f"\n{run.error_count} file error(s). See GET /api/cruises/sync/runs/{run.id}")


def main():
    parser = argparse.ArgumentParser(
        description="Sync the Traveltek cruise feed into the catalog."
    )
    parser.add_argument(
        "--source-dir",
        default=None,
        help="Local feed directory (overrides FEED_SOURCE / FEED_LOCAL_DIR)"
    )
    parser.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        help="Only this feed file, relative to the source (repeatable)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate records without writing sailings"
    )
    parser.add_argument(
        "--delta",
        action="store_true",
        help="Skip files unchanged since their last successful sync"
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Files processed in parallel (1-16)"
    )
    args = parser.parse_args()

    configure_logging()

    options = SyncOptions(
        source_dir=args.source_dir,
        files=args.files,
        dry_run=args.dry_run,
        delta=args.delta,
        concurrency=args.concurrency,
    )

    try:
        run = get_cruise_sync_service().run(options)
    except SyncAlreadyRunningError as e:
        print(f"ERROR: {e.message}")
        sys.exit(2)

    print_summary(run)
    sys.exit(EXIT_CODES.get(run.status, 1))


if __name__ == "__main__":
    main()
