"""
Catalog coverage and stub review reports.

Read-only. needs_review is derived from row state on every call; nothing
here writes flags back.
"""

from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Optional

import structlog

from config import fetch_all, get_supabase_client, settings
from exceptions import DatabaseError
from models.catalog import (
    KEY_MEDIA_COLUMNS,
    MANDATORY_COLUMNS,
    EntityType,
    is_placeholder_name,
)
from models.coverage import (
    CoverageStats,
    EntityCoverage,
    NameCollision,
    SailingCoverage,
    StubEntry,
    StubsReport,
)

logger = structlog.get_logger(__name__)


def row_needs_review(entity_type: EntityType, row: dict) -> bool:
    """Stub, flagged, missing a mandatory column, or still carrying a placeholder name."""
    if row.get("is_stub") or row.get("needs_review"):
        return True
    if any(row.get(column) is None for column in MANDATORY_COLUMNS[entity_type]):
        return True
    return is_placeholder_name(row.get("name"))


def has_key_media(entity_type: EntityType, row: dict) -> bool:
    columns = KEY_MEDIA_COLUMNS[entity_type]
    if not columns:
        return False
    return all(row.get(column) not in (None, "") for column in columns)


class CoverageService:
    """Completeness reporting over the canonical catalog."""

    def __init__(self, provider: Optional[str] = None):
        self.db = get_supabase_client()
        self.provider = provider or settings.feed_provider

    def _entity_rows(self, entity_type: EntityType) -> list[dict]:
        columns = {"id", "provider_identifier", "name", "is_stub", "needs_review", "created_at"}
        columns.update(KEY_MEDIA_COLUMNS[entity_type])
        columns.update(MANDATORY_COLUMNS[entity_type])
        select = ", ".join(sorted(columns))

        return fetch_all(
            lambda: self.db.table(entity_type.table)
            .select(select)
            .eq("provider", self.provider)
            .order("id")
        )

    def report(self) -> CoverageStats:
        """
        Per-type completeness, name collisions and sailing totals.

        Raises:
            DatabaseError: If a read fails
        """
        try:
            coverage: dict[EntityType, EntityCoverage] = {}
            collisions: list[NameCollision] = []

            for entity_type in EntityType:
                rows = self._entity_rows(entity_type)
                coverage[entity_type] = EntityCoverage(
                    total=len(rows),
                    with_key_media=sum(1 for r in rows if has_key_media(entity_type, r)),
                    needs_review=sum(1 for r in rows if row_needs_review(entity_type, r)),
                    stubs=sum(1 for r in rows if r.get("is_stub")),
                )
                collisions.extend(self._name_collisions(entity_type, rows))

            sailings = self._sailing_coverage()

        except DatabaseError:
            raise
        except Exception as e:
            logger.error("coverage_report_failed", error=str(e))
            raise DatabaseError("select", str(e))

        logger.info(
            "coverage_report_generated",
            ships=coverage[EntityType.SHIP].total,
            ports=coverage[EntityType.PORT].total,
            collisions=len(collisions)
        )

        return CoverageStats(
            cruise_lines=coverage[EntityType.CRUISE_LINE],
            ships=coverage[EntityType.SHIP],
            ports=coverage[EntityType.PORT],
            regions=coverage[EntityType.REGION],
            sailings=sailings,
            name_collisions=collisions,
            generated_at=datetime.now(timezone.utc),
        )

    def _name_collisions(self, entity_type: EntityType, rows: list[dict]) -> list[NameCollision]:
        """Same name (case-insensitive) on different external ids. Placeholders are ignored."""
        by_name: dict[str, list[dict]] = defaultdict(list)
        for row in rows:
            name = row.get("name")
            if is_placeholder_name(name):
                continue
            by_name[name.strip().lower()].append(row)

        collisions = []
        for group in by_name.values():
            if len(group) < 2:
                continue
            collisions.append(NameCollision(
                entity_type=entity_type,
                name=group[0]["name"],
                external_ids=sorted(r["provider_identifier"] for r in group),
            ))
        collisions.sort(key=lambda c: c.name.lower())
        return collisions

    def _sailing_coverage(self) -> SailingCoverage:
        total = (
            self.db.table("cruise_sailings")
            .select("id", count="exact")
            .eq("provider", self.provider)
            .limit(1)
            .execute()
        )
        active_future = (
            self.db.table("cruise_sailings")
            .select("id", count="exact")
            .eq("provider", self.provider)
            .eq("is_active", True)
            .gte("sail_date", date.today().isoformat())
            .limit(1)
            .execute()
        )
        return SailingCoverage(total=total.count or 0, active_future=active_future.count or 0)

    def stubs_report(self, limit: Optional[int] = None) -> StubsReport:
        """
        Stubs awaiting review: per-type counts and the oldest `limit` stubs.

        Raises:
            DatabaseError: If a read fails
        """
        limit = limit or settings.stubs_report_limit
        by_type: dict[EntityType, int] = {}
        stubs: list[StubEntry] = []

        try:
            for entity_type in EntityType:
                result = (
                    self.db.table(entity_type.table)
                    .select("id, provider_identifier, name, created_at", count="exact")
                    .eq("provider", self.provider)
                    .eq("is_stub", True)
                    .order("created_at")
                    .order("id")
                    .limit(limit)
                    .execute()
                )
                by_type[entity_type] = result.count or 0
                stubs.extend(
                    StubEntry(
                        id=row["id"],
                        entity_type=entity_type,
                        external_id=row["provider_identifier"],
                        name=row["name"],
                        created_at=row["created_at"],
                    )
                    for row in result.data or []
                )
        except Exception as e:
            logger.error("stubs_report_failed", error=str(e))
            raise DatabaseError("select", str(e))

        stubs.sort(key=lambda s: (s.created_at, s.id))

        return StubsReport(
            total_pending=sum(by_type.values()),
            by_type=by_type,
            oldest_stubs=stubs[:limit],
        )


# Singleton instance
_coverage_service: Optional[CoverageService] = None


def get_coverage_service() -> CoverageService:
    """Get or create CoverageService instance."""
    global _coverage_service
    if _coverage_service is None:
        _coverage_service = CoverageService()
    return _coverage_service
