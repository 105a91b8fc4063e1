"""
Unit tests for EntityResolver.

Run: pytest tests/unit/test_entity_resolver.py -v
"""

from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from exceptions import (
    EntityNotFoundError,
    InvalidEntityTypeError,
    ReferenceResolutionError,
    StorageUnavailableError,
)
from models.catalog import EntityType
from services.entity_resolver import EntityResolver, parse_entity_type
from services.feed_validator import validate
from tests.factories import CatalogFactory, FeedRecordFactory


class TestResolve:
    """Tests for resolve()"""

    def test_unknown_id_creates_stub(self, mock_db):
        """Should insert a stub flagged for review with a placeholder name."""
        # Arrange
        resolver = EntityResolver()

        # Act
        entity = resolver.resolve(EntityType.SHIP, "SHIP-42", {})

        # Assert
        assert entity.created is True
        assert entity.is_stub is True
        assert entity.needs_review is True
        assert entity.name == "Unknown ship SHIP-42"
        assert mock_db.count("cruise_ships") == 1

    def test_stub_keeps_feed_name(self, mock_db):
        """Should use the feed's name for a new stub when it has one."""
        resolver = EntityResolver()

        entity = resolver.resolve(EntityType.PORT, "100", {"name": "Barcelona", "latitude": 41.38})

        assert entity.name == "Barcelona"
        assert entity.attributes["latitude"] == 41.38
        assert entity.is_stub is True

    def test_known_id_returns_existing_row(self, mock_db):
        """Should return the existing row without creating another."""
        # Arrange
        line = mock_db.seed("cruise_lines", [CatalogFactory.line("7")])[0]
        resolver = EntityResolver()

        # Act
        entity = resolver.resolve(EntityType.CRUISE_LINE, "7", {"name": "Royal Caribbean"})

        # Assert
        assert entity.id == line["id"]
        assert entity.created is False
        assert mock_db.count("cruise_lines") == 1

    def test_enriches_without_blanking(self, mock_db):
        """Should fill new values and never erase known ones."""
        # Arrange
        mock_db.seed("cruise_lines", [CatalogFactory.line(
            "7",
            name="Unknown cruise line 7",
            code="RCL",
            logo_url=None,
        )])
        resolver = EntityResolver()

        # Act
        entity = resolver.resolve(EntityType.CRUISE_LINE, "7", {
            "name": "Royal Caribbean",
            "code": "",
            "logo_url": "https://static.example.com/lines/rcl.png",
        })

        # Assert
        assert entity.name == "Royal Caribbean"
        assert entity.attributes["code"] == "RCL"
        assert entity.attributes["logo_url"] == "https://static.example.com/lines/rcl.png"

    def test_enrichment_keeps_review_flags(self, mock_db):
        """Should not clear is_stub or needs_review when enriching."""
        mock_db.seed("cruise_ships", [CatalogFactory.ship(None, "5001", is_stub=True, needs_review=True)])
        resolver = EntityResolver()

        entity = resolver.resolve(EntityType.SHIP, "5001", {"name": "Harmony of the Seas"})

        assert entity.is_stub is True
        assert entity.needs_review is True

    def test_unchanged_values_skip_update(self, mock_db):
        """Should not write when nothing differs."""
        mock_db.seed("cruise_ports", [CatalogFactory.port("100")])
        resolver = EntityResolver()

        resolver.resolve(EntityType.PORT, "100", {"name": "Barcelona", "latitude": 41.3851})

        assert ("cruise_ports", "update") not in mock_db.calls

    def test_missing_id_raises(self, mock_db):
        """Should reject an empty external id."""
        resolver = EntityResolver()

        with pytest.raises(ReferenceResolutionError):
            resolver.resolve(EntityType.SHIP, "  ", {})

    def test_storage_down_raises_unavailable(self, mock_db):
        """Should raise StorageUnavailableError on transport failures."""
        # Arrange
        resolver = EntityResolver()
        mock_db.fail("cruise_ships", "upsert", httpx.ConnectError("connection refused"))

        # Act & Assert
        with pytest.raises(StorageUnavailableError):
            resolver.resolve(EntityType.SHIP, "5001", {})

    def test_concurrent_resolution_creates_one_row(self, mock_db):
        """Should leave exactly one row when workers race on the same unseen id."""
        # Arrange
        resolver = EntityResolver()

        # Act
        with ThreadPoolExecutor(max_workers=8) as pool:
            entities = list(pool.map(
                lambda _: resolver.resolve(EntityType.SHIP, "SHIP-42", {}),
                range(16)
            ))

        # Assert
        assert mock_db.count("cruise_ships") == 1
        assert len({e.id for e in entities}) == 1
        assert sum(1 for e in entities if e.created) == 1


class TestResolveRefs:
    """Tests for resolve_refs()"""

    def test_resolves_every_reference(self, mock_db):
        """Should resolve line, ship, ports and regions of one sailing."""
        # Arrange
        sailing = validate(FeedRecordFactory.create()).record
        resolver = EntityResolver()

        # Act
        refs = resolver.resolve_refs(sailing)

        # Assert
        assert sorted(refs.port_ids) == ["100", "101", "102"]
        assert list(refs.region_ids) == ["12"]
        assert refs.embark_port_id == refs.port_ids["100"]
        assert refs.disembark_port_id == refs.port_ids["100"]
        # line + ship + 3 ports + 1 region
        assert refs.stubs_created == 6

    def test_ship_linked_to_line(self, mock_db):
        """Should store the resolved cruise line on the ship."""
        sailing = validate(FeedRecordFactory.create()).record
        resolver = EntityResolver()

        refs = resolver.resolve_refs(sailing)

        ship = mock_db.all("cruise_ships")[0]
        assert ship["cruise_line_id"] == refs.cruise_line_id

    def test_second_sailing_creates_no_stubs(self, mock_db):
        """Should reuse rows created by an earlier sailing."""
        resolver = EntityResolver()
        resolver.resolve_refs(validate(FeedRecordFactory.create(cruise_id="1")).record)

        refs = resolver.resolve_refs(validate(FeedRecordFactory.create(cruise_id="2")).record)

        assert refs.stubs_created == 0
        assert mock_db.count("cruise_ports") == 3


class TestReferenceCache:
    """Tests for the reference id cache"""

    def test_repeat_lookup_skips_database(self, mock_db):
        """Should answer a repeated lookup from memory."""
        # Arrange
        resolver = EntityResolver()
        first = resolver.resolve(EntityType.SHIP, "SHIP-42", {"name": "Harmony of the Seas"})
        calls_before = len(mock_db.calls)

        # Act
        second = resolver.resolve(EntityType.SHIP, "SHIP-42", {"name": "Harmony of the Seas"})

        # Assert
        assert second.id == first.id
        assert second.created is False
        assert len(mock_db.calls) == calls_before
        stats = resolver.cache_stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.by_type[EntityType.SHIP] == 1
        assert stats.hit_rate == 0.5

    def test_new_values_still_enrich(self, mock_db):
        """Should go to the database when the feed brings a value the cached row lacks."""
        # Arrange
        resolver = EntityResolver()
        resolver.resolve(EntityType.PORT, "100", {})

        # Act
        entity = resolver.resolve(EntityType.PORT, "100", {"name": "Barcelona"})

        # Assert
        assert entity.name == "Barcelona"
        assert mock_db.all("cruise_ports")[0]["name"] == "Barcelona"
        assert resolver.resolve(EntityType.PORT, "100", {"name": "Barcelona"}).name == "Barcelona"
        assert resolver.cache_stats().hits == 1

    def test_bounded_evicts_least_recently_used(self, mock_db):
        """Should keep at most the configured number of rows."""
        # Arrange
        resolver = EntityResolver(cache_max_entries=2)
        for port_id in ("1", "2", "3"):
            resolver.resolve(EntityType.PORT, port_id, {})

        # Act
        resolver.resolve(EntityType.PORT, "1", {})

        # Assert
        stats = resolver.cache_stats()
        assert stats.total_entries == 2
        assert stats.max_entries == 2
        assert stats.hits == 0
        assert mock_db.count("cruise_ports") == 3

    def test_zero_size_disables_cache(self, mock_db):
        """Should never cache when the limit is zero."""
        resolver = EntityResolver(cache_max_entries=0)

        resolver.resolve(EntityType.REGION, "12", {})
        resolver.resolve(EntityType.REGION, "12", {})

        assert resolver.cache_stats().total_entries == 0
        assert resolver.cache_stats().hits == 0

    def test_clear_drops_entries_and_counters(self, mock_db):
        """Should empty the cache and reset hit counters."""
        # Arrange
        resolver = EntityResolver()
        resolver.resolve(EntityType.CRUISE_LINE, "7", {})
        resolver.resolve(EntityType.CRUISE_LINE, "7", {})

        # Act
        dropped = resolver.clear_cache()

        # Assert
        assert dropped == 1
        stats = resolver.cache_stats()
        assert stats.total_entries == 0
        assert stats.hits == 0
        assert stats.misses == 0

    def test_confirm_refreshes_cached_flags(self, mock_db):
        """Should not serve stale review flags after a confirm."""
        # Arrange
        resolver = EntityResolver()
        stub = resolver.resolve(EntityType.SHIP, "SHIP-42", {})

        # Act
        resolver.confirm(EntityType.SHIP, stub.id)
        entity = resolver.resolve(EntityType.SHIP, "SHIP-42", {})

        # Assert
        assert entity.id == stub.id
        assert entity.is_stub is False
        assert entity.needs_review is False


class TestConfirm:
    """Tests for confirm()"""

    def test_clears_review_flags(self, mock_db):
        """Should set is_stub and needs_review to false."""
        ship = mock_db.seed("cruise_ships", [CatalogFactory.ship(None, is_stub=True, needs_review=True)])[0]
        resolver = EntityResolver()

        entity = resolver.confirm(EntityType.SHIP, ship["id"])

        assert entity.is_stub is False
        assert entity.needs_review is False
        assert mock_db.all("cruise_ships")[0]["is_stub"] is False

    def test_unknown_id_raises_not_found(self, mock_db):
        """Should raise EntityNotFoundError for a missing row."""
        resolver = EntityResolver()

        with pytest.raises(EntityNotFoundError):
            resolver.confirm(EntityType.PORT, "00000000-0000-0000-0000-000000000000")

    def test_malformed_id_raises_not_found(self, mock_db):
        """Should treat a malformed uuid as not found."""
        resolver = EntityResolver()

        with pytest.raises(EntityNotFoundError):
            resolver.confirm(EntityType.PORT, "not-a-uuid")


class TestParseEntityType:
    """Tests for parse_entity_type()"""

    @pytest.mark.parametrize("value,expected", [
        ("ship", EntityType.SHIP),
        ("ships", EntityType.SHIP),
        ("cruise-line", EntityType.CRUISE_LINE),
        ("cruise_lines", EntityType.CRUISE_LINE),
        ("cruise_ports", EntityType.PORT),
        ("Region", EntityType.REGION),
    ])
    def test_accepts_aliases(self, value, expected):
        """Should accept singular, plural and table names."""
        assert parse_entity_type(value) == expected

    def test_rejects_unknown(self):
        """Should raise InvalidEntityTypeError."""
        with pytest.raises(InvalidEntityTypeError):
            parse_entity_type("harbour")
