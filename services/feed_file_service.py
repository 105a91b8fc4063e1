"""
Tracks feed file content hashes so delta syncs can skip unchanged files.
"""
import hashlib
from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog

from config import get_supabase_client, settings
from exceptions import StorageUnavailableError

logger = structlog.get_logger(__name__)


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class FeedFileService:
    def __init__(self, provider: Optional[str] = None):
        self.db = get_supabase_client()
        self.table = "cruise_feed_files"
        self.provider = provider or settings.feed_provider

    def is_unchanged(self, file_path: str, file_hash: str) -> bool:
        """
        True when the last successful sync of this path saw the same content.

        A failed lookup counts as changed, so the file is synced again.

        Raises:
            StorageUnavailableError: Database unreachable
        """
        try:
            result = (
                self.db.table(self.table)
                .select("content_hash, status")
                .eq("provider", self.provider)
                .eq("file_path", file_path)
                .limit(1)
                .execute()
            )
        except httpx.TransportError as e:
            raise StorageUnavailableError(f"Database unreachable while checking {file_path}: {e}")
        except Exception as e:
            logger.warning("feed_file_lookup_failed", file_path=file_path, error=str(e))
            return False
        if not result.data:
            return False
        row = result.data[0]
        return row["status"] == "success" and row["content_hash"] == file_hash

    def record_synced(
        self,
        file_path: str,
        file_hash: str,
        run_id: str,
        size_bytes: int = 0,
    ) -> None:
        """
        Record a successful sync of a file for future delta runs.

        A failed write only costs a re-sync of the file next time, so it is
        logged and not raised.
        """
        try:
            self.db.table(self.table).upsert({
                "provider": self.provider,
                "file_path": file_path,
                "content_hash": file_hash,
                "size_bytes": size_bytes,
                "last_run_id": run_id,
                "status": "success",
                "error_message": None,
                "last_synced_at": datetime.now(timezone.utc).isoformat(),
            }, on_conflict="provider,file_path").execute()
        except Exception as e:
            logger.warning("failed_to_record_feed_file", file_path=file_path, error=str(e))
            return
        logger.debug("feed_file_recorded", file_path=file_path, size_bytes=size_bytes)

    def record_failed(
        self,
        file_path: str,
        run_id: str,
        error_message: str,
        file_hash: str = "",
    ) -> None:
        """Record a failed file so the next delta run retries it."""
        # Truncate error message to prevent excessively long entries
        truncated_msg = error_message[:2000] if error_message else "Unknown error"
        try:
            self.db.table(self.table).upsert({
                "provider": self.provider,
                "file_path": file_path,
                "content_hash": file_hash or "",
                "last_run_id": run_id,
                "status": "error",
                "error_message": truncated_msg,
                "last_synced_at": datetime.now(timezone.utc).isoformat(),
            }, on_conflict="provider,file_path").execute()
        except Exception as log_err:
            # The sync error row is the record of truth; this is only a retry hint
            logger.warning(
                "failed_to_record_feed_file_error",
                file_path=file_path,
                log_error=str(log_err),
            )


_service: Optional[FeedFileService] = None


def get_feed_file_service() -> FeedFileService:
    global _service
    if _service is None:
        _service = FeedFileService()
    return _service
