"""
Unit tests for CoverageService.

Run: pytest tests/unit/test_coverage_service.py -v
"""

import httpx
import pytest

from exceptions import DatabaseError
from models.catalog import EntityType
from services.coverage_service import CoverageService, has_key_media, row_needs_review
from tests.factories import CatalogFactory, SailingRowFactory


class TestRowNeedsReview:
    """Tests for row_needs_review()"""

    def test_complete_row(self):
        """Should not flag a confirmed row with every mandatory column."""
        assert row_needs_review(EntityType.PORT, CatalogFactory.port()) is False

    def test_stub_row(self):
        """Should flag stubs."""
        assert row_needs_review(EntityType.PORT, CatalogFactory.port(is_stub=True)) is True

    def test_missing_mandatory_column(self):
        """Should flag a port without coordinates even when confirmed."""
        assert row_needs_review(EntityType.PORT, CatalogFactory.port(latitude=None)) is True

    def test_placeholder_name(self):
        """Should flag a row still named like a stub."""
        row = CatalogFactory.line(name="Unknown cruise line 7")
        assert row_needs_review(EntityType.CRUISE_LINE, row) is True

    def test_regions_have_no_key_media(self):
        """Should never count region media."""
        assert has_key_media(EntityType.REGION, CatalogFactory.region()) is False


class TestReport:
    """Tests for report()"""

    def test_empty_catalog(self, mock_db):
        """Should return zero counts."""
        stats = CoverageService().report()

        assert stats.ships.total == 0
        assert stats.sailings.total == 0
        assert stats.name_collisions == []

    def test_counts_per_type(self, mock_db):
        """Should count totals, media, stubs and review items."""
        # Arrange
        line = mock_db.seed("cruise_lines", [CatalogFactory.line("7")])[0]
        mock_db.seed("cruise_ships", [
            CatalogFactory.ship(line["id"], "5001"),
            CatalogFactory.ship(line["id"], "5002", name="Wonder of the Seas", image_url=None),
            CatalogFactory.ship(None, "SHIP-42", name="Unknown ship SHIP-42", image_url=None,
                                is_stub=True, needs_review=True),
        ])
        mock_db.seed("cruise_ports", [
            CatalogFactory.port("100"),
            CatalogFactory.port("101", name="Marseille", latitude=None, longitude=None),
        ])

        # Act
        stats = CoverageService().report()

        # Assert
        assert stats.cruise_lines.total == 1
        assert stats.cruise_lines.with_key_media == 1
        assert stats.ships.total == 3
        assert stats.ships.with_key_media == 1
        assert stats.ships.stubs == 1
        assert stats.ships.needs_review == 1
        assert stats.ports.with_key_media == 1
        assert stats.ports.needs_review == 1

    def test_name_collisions(self, mock_db):
        """Should list same-name rows with different ids, ignoring case and placeholders."""
        # Arrange
        mock_db.seed("cruise_ports", [
            CatalogFactory.port("100", name="Barcelona"),
            CatalogFactory.port("900", name="BARCELONA"),
            CatalogFactory.port("200", name="Unknown port 200"),
            CatalogFactory.port("201", name="Unknown port 200"),
        ])

        # Act
        stats = CoverageService().report()

        # Assert
        assert len(stats.name_collisions) == 1
        collision = stats.name_collisions[0]
        assert collision.entity_type == EntityType.PORT
        assert collision.external_ids == ["100", "900"]

    def test_sailing_totals(self, mock_db):
        """Should count all sailings and active future ones."""
        line = mock_db.seed("cruise_lines", [CatalogFactory.line()])[0]
        ship = mock_db.seed("cruise_ships", [CatalogFactory.ship(line["id"])])[0]
        mock_db.seed("cruise_sailings", [
            SailingRowFactory.create(line["id"], ship["id"], "a", sail_date="2030-06-01"),
            SailingRowFactory.create(line["id"], ship["id"], "b", sail_date="2030-07-01", is_active=False),
            SailingRowFactory.create(line["id"], ship["id"], "c", sail_date="2020-01-01"),
        ])

        stats = CoverageService().report()

        assert stats.sailings.total == 3
        assert stats.sailings.active_future == 1

    def test_read_failure_raises_database_error(self, mock_db):
        """Should wrap storage failures in DatabaseError."""
        mock_db.fail("cruise_ships", "select", httpx.ConnectError("down"))

        with pytest.raises(DatabaseError):
            CoverageService().report()


class TestStubsReport:
    """Tests for stubs_report()"""

    def test_oldest_first_across_types(self, mock_db):
        """Should merge stubs of every type, oldest first, up to the limit."""
        # Arrange
        mock_db.seed("cruise_ports", [
            CatalogFactory.port("300", name="Unknown port 300", is_stub=True, created_at="2026-10-03T00:00:00+00:00"),
            CatalogFactory.port("301", name="Unknown port 301", is_stub=True, created_at="2026-10-01T00:00:00+00:00"),
        ])
        mock_db.seed("cruise_ships", [
            CatalogFactory.ship(None, "SHIP-42", name="Unknown ship SHIP-42", is_stub=True,
                                created_at="2026-10-02T00:00:00+00:00"),
            CatalogFactory.ship(None, "5001"),
        ])

        # Act
        report = CoverageService().stubs_report(limit=2)

        # Assert
        assert report.total_pending == 3
        assert report.by_type[EntityType.PORT] == 2
        assert report.by_type[EntityType.SHIP] == 1
        assert report.by_type[EntityType.REGION] == 0
        assert [s.external_id for s in report.oldest_stubs] == ["301", "SHIP-42"]

    def test_no_stubs(self, mock_db):
        """Should report nothing pending."""
        mock_db.seed("cruise_lines", [CatalogFactory.line()])

        report = CoverageService().stubs_report()

        assert report.total_pending == 0
        assert report.oldest_stubs == []
