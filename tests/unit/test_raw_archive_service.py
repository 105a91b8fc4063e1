"""
Unit tests for RawArchiveService.

Run: pytest tests/unit/test_raw_archive_service.py -v
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from exceptions import DatabaseError
from services.raw_archive_service import RawArchiveService


def raw_row(external_id: str, expires_in: timedelta) -> dict:
    now = datetime.now(timezone.utc)
    return {
        "provider": "traveltek",
        "provider_identifier": external_id,
        "file_path": f"{external_id}.json",
        "raw_data": {"cruiseid": external_id},
        "synced_at": now.isoformat(),
        "expires_at": (now + expires_in).isoformat(),
    }


class TestStorageStats:
    """Tests for storage_stats()"""

    def test_counts_total_expired_and_expiring(self, mock_db):
        """Should split archived documents by expiry."""
        # Arrange
        mock_db.seed("cruise_sync_raw", [
            raw_row("1", timedelta(days=-2)),
            raw_row("2", timedelta(hours=-1)),
            raw_row("3", timedelta(hours=3)),
            raw_row("4", timedelta(days=10)),
            raw_row("5", timedelta(days=29)),
        ])

        # Act
        stats = RawArchiveService().storage_stats()

        # Assert
        assert stats.total_records == 5
        assert stats.expired == 2
        assert stats.expiring_within_24h == 1

    def test_empty_archive(self, mock_db):
        """Should report zeros for an empty table."""
        stats = RawArchiveService().storage_stats()

        assert (stats.total_records, stats.expired, stats.expiring_within_24h) == (0, 0, 0)

    def test_query_failure_raises_database_error(self, mock_db):
        """Should wrap storage failures."""
        mock_db.fail("cruise_sync_raw", "select", httpx.ConnectError("down"))

        with pytest.raises(DatabaseError):
            RawArchiveService().storage_stats()


class TestPurgeExpired:
    """Tests for purge_expired()"""

    def test_deletes_only_expired(self, mock_db):
        """Should keep documents that have not expired yet."""
        # Arrange
        mock_db.seed("cruise_sync_raw", [
            raw_row("1", timedelta(days=-1)),
            raw_row("2", timedelta(days=1)),
        ])

        # Act
        result = RawArchiveService().purge_expired()

        # Assert
        assert result.rows_deleted == 1
        assert [r["provider_identifier"] for r in mock_db.all("cruise_sync_raw")] == ["2"]
