"""
Raw feed archive.

Keeps the last raw JSON seen per sailing in cruise_sync_raw for
raw_retention_days, for debugging mapping problems after the fact.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from config import get_supabase_client, settings
from exceptions import DatabaseError
from models.coverage import PurgeResult, RawStorageStats

logger = structlog.get_logger(__name__)


class RawArchiveService:
    """Write and purge archived feed documents."""

    def __init__(self, provider: Optional[str] = None):
        self.db = get_supabase_client()
        self.table = "cruise_sync_raw"
        self.provider = provider or settings.feed_provider

    def archive(self, external_id: str, file_path: str, raw: dict, run_id: str) -> None:
        """
        Store the raw document for one sailing, replacing the previous copy.

        Best effort: a failed archive write is logged and the sync goes on.
        """
        now = datetime.now(timezone.utc)
        try:
            self.db.table(self.table).upsert({
                "provider": self.provider,
                "provider_identifier": external_id,
                "file_path": file_path,
                "run_id": run_id,
                "raw_data": raw,
                "synced_at": now.isoformat(),
                "expires_at": (now + timedelta(days=settings.raw_retention_days)).isoformat(),
            }, on_conflict="provider,provider_identifier").execute()
        except Exception as e:
            logger.warning(
                "raw_archive_failed",
                external_id=external_id,
                file_path=file_path,
                error=str(e)
            )

    def purge_expired(self) -> PurgeResult:
        """
        Delete archived documents past their expiry.

        Raises:
            DatabaseError: If the delete fails
        """
        now = datetime.now(timezone.utc)
        try:
            result = (
                self.db.table(self.table)
                .delete()
                .lt("expires_at", now.isoformat())
                .execute()
            )
        except Exception as e:
            logger.error("raw_archive_purge_failed", error=str(e))
            raise DatabaseError("delete", str(e))

        deleted = len(result.data or [])
        logger.info("raw_archive_purged", rows_deleted=deleted)
        return PurgeResult(rows_deleted=deleted, purged_before=now)

    def _count(self, **bounds) -> int:
        query = self.db.table(self.table).select("id", count="exact")
        for op, value in bounds.items():
            query = getattr(query, op)("expires_at", value.isoformat())
        return query.limit(1).execute().count or 0

    def storage_stats(self) -> RawStorageStats:
        """
        Archived documents in total, already expired, and expiring within a day.

        Raises:
            DatabaseError: If a count query fails
        """
        now = datetime.now(timezone.utc)
        try:
            stats = RawStorageStats(
                total_records=self._count(),
                expired=self._count(lt=now),
                expiring_within_24h=self._count(gte=now, lt=now + timedelta(hours=24)),
                generated_at=now,
            )
        except Exception as e:
            logger.error("raw_archive_stats_failed", error=str(e))
            raise DatabaseError("select", str(e))

        logger.debug("raw_archive_stats", total=stats.total_records, expired=stats.expired)
        return stats


_service: Optional[RawArchiveService] = None


def get_raw_archive_service() -> RawArchiveService:
    global _service
    if _service is None:
        _service = RawArchiveService()
    return _service
