"""
Unit tests for SailingUpsertService.

Run: pytest tests/unit/test_sailing_upsert_service.py -v
"""

from datetime import date, timedelta

import httpx
import pytest
from postgrest.exceptions import APIError

from exceptions import SailingUpsertError, StorageUnavailableError
from services.entity_resolver import EntityResolver
from services.feed_validator import validate
from services.sailing_upsert_service import SailingUpsertService
from tests.factories import CatalogFactory, FeedRecordFactory, SailingRowFactory


def validated(**overrides):
    return validate(FeedRecordFactory.create(**overrides)).record


def write(sailing):
    refs = EntityResolver().resolve_refs(sailing)
    return SailingUpsertService().upsert(sailing, refs), refs


class TestUpsert:
    """Tests for upsert()"""

    def test_creates_sailing_row(self, mock_db):
        """Should insert the sailing with feed-owned columns."""
        # Arrange
        sailing = validated(cruise_id="1001")

        # Act
        result, refs = write(sailing)

        # Assert
        assert result.created is True
        row = mock_db.all("cruise_sailings")[0]
        assert row["id"] == result.sailing_id
        assert row["provider_identifier"] == "1001"
        assert row["cruise_line_id"] == refs.cruise_line_id
        assert row["sail_date"] == "2030-06-01"
        assert row["end_date"] == "2030-06-08"
        assert row["cheapest_inside_cents"] == 49900
        assert row["cheapest_price_cents"] == 49900
        assert row["embark_port_name"] == "Barcelona"

    def test_writes_children(self, mock_db):
        """Should store stops, regions and cabin prices."""
        sailing = validated(cruise_id="1001")

        result, refs = write(sailing)

        stops = [s for s in mock_db.all("cruise_sailing_stops") if s["sailing_id"] == result.sailing_id]
        assert len(stops) == 5
        sea_day = next(s for s in stops if s["day_number"] == 2)
        assert sea_day["is_sea_day"] is True
        assert sea_day["port_id"] is None
        regions = mock_db.all("cruise_sailing_regions")
        assert regions == [{"id": regions[0]["id"], "sailing_id": result.sailing_id,
                            "region_id": refs.region_ids["12"], "is_primary": True}]
        assert {p["cabin_code"] for p in mock_db.all("cruise_sailing_cabin_prices")} == {"IA", "BA"}

    def test_resync_keeps_internal_id(self, mock_db):
        """Should update in place, preserving the sailing id."""
        # Arrange
        first, _ = write(validated(cruise_id="1001"))

        # Act
        second, _ = write(validated(cruise_id="1001", name="Updated Name"))

        # Assert
        assert second.created is False
        assert second.sailing_id == first.sailing_id
        assert mock_db.count("cruise_sailings") == 1
        assert mock_db.all("cruise_sailings")[0]["name"] == "Updated Name"

    def test_resync_replaces_children(self, mock_db):
        """Should leave only the new itinerary after a re-sync."""
        # Arrange
        write(validated(cruise_id="1001"))
        shorter = FeedRecordFactory.create(cruise_id="1001")
        shorter["itinerary"] = shorter["itinerary"][:2]

        # Act
        result, _ = write(validate(shorter).record)

        # Assert
        stops = mock_db.all("cruise_sailing_stops")
        assert sorted(s["day_number"] for s in stops) == [1, 2]
        assert all(s["sailing_id"] == result.sailing_id for s in stops)

    def test_operator_columns_survive(self, mock_db):
        """Should not overwrite columns the feed does not own."""
        first, _ = write(validated(cruise_id="1001"))
        mock_db.tables["cruise_sailings"][0]["marketing_note"] = "Hand-picked"

        write(validated(cruise_id="1001"))

        assert mock_db.all("cruise_sailings")[0]["marketing_note"] == "Hand-picked"

    def test_cabin_types_upserted_per_ship(self, mock_db):
        """Should keep one cabin type row per ship and code."""
        write(validated(cruise_id="1001"))
        write(validated(cruise_id="1002"))

        cabin_types = mock_db.all("cruise_ship_cabin_types")
        assert sorted(c["cabin_code"] for c in cabin_types) == ["BA", "IA"]

    def test_constraint_violation_raises_upsert_error(self, mock_db):
        """Should turn a storage rejection into a record-level error."""
        # Arrange
        sailing = validated(cruise_id="1001")
        refs = EntityResolver().resolve_refs(sailing)
        mock_db.fail("cruise_sailings", "upsert", APIError({
            "message": "violates foreign key constraint",
            "code": "23503",
            "hint": None,
            "details": None,
        }))

        # Act & Assert
        with pytest.raises(SailingUpsertError) as exc_info:
            SailingUpsertService().upsert(sailing, refs)
        assert exc_info.value.sailing_external_id == "1001"
        assert exc_info.value.error_type == "upsert_error"

    def test_transport_failure_raises_unavailable(self, mock_db):
        """Should treat transport failures as run-fatal."""
        sailing = validated(cruise_id="1001")
        refs = EntityResolver().resolve_refs(sailing)
        mock_db.fail("replace_sailing_details", "rpc", httpx.ReadTimeout("timed out"))

        with pytest.raises(StorageUnavailableError):
            SailingUpsertService().upsert(sailing, refs)


class TestPastSailingCleanup:
    """Tests for preview_cleanup() and cleanup_past_sailings()"""

    @pytest.fixture
    def seeded(self, mock_db):
        line = mock_db.seed("cruise_lines", [CatalogFactory.line()])[0]
        ship = mock_db.seed("cruise_ships", [CatalogFactory.ship(line["id"])])[0]
        today = date.today()
        rows = [
            SailingRowFactory.create(line["id"], ship["id"], "old-1",
                                     sail_date=(today - timedelta(days=30)).isoformat()),
            SailingRowFactory.create(line["id"], ship["id"], "old-2",
                                     sail_date=(today - timedelta(days=12)).isoformat()),
            SailingRowFactory.create(line["id"], ship["id"], "current",
                                     sail_date=(today - timedelta(days=3)).isoformat()),
            SailingRowFactory.create(line["id"], ship["id"], "future", sail_date="2030-06-01"),
        ]
        mock_db.seed("cruise_sailings", rows)
        mock_db.seed("cruise_sailing_stops", [
            {"sailing_id": rows[0]["id"], "day_number": 1, "sequence_order": 1, "is_sea_day": True},
        ])
        return rows

    def test_preview_counts_ended_sailings(self, mock_db, seeded):
        """Should count sailings that ended before today."""
        preview = SailingUpsertService().preview_cleanup()

        assert preview.sailings_to_delete == 2
        assert str(preview.oldest_end_date) == seeded[0]["end_date"]
        assert str(preview.newest_end_date) == seeded[1]["end_date"]

    def test_preview_with_buffer(self, mock_db, seeded):
        """Should move the cutoff back by the buffer."""
        preview = SailingUpsertService().preview_cleanup(days_buffer=10)

        assert preview.sailings_to_delete == 1

    def test_cleanup_deletes_and_cascades(self, mock_db, seeded):
        """Should delete ended sailings and their children."""
        # Act
        result = SailingUpsertService().cleanup_past_sailings()

        # Assert
        assert result.sailings_deleted == 2
        remaining = {r["provider_identifier"] for r in mock_db.all("cruise_sailings")}
        assert remaining == {"current", "future"}
        assert mock_db.all("cruise_sailing_stops") == []
