"""
Coverage, stub review and maintenance schemas.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from models.catalog import EntityType


class EntityCoverage(BaseModel):
    """Completeness counts for one canonical type."""
    total: int = 0
    with_key_media: int = 0
    needs_review: int = 0
    stubs: int = 0


class NameCollision(BaseModel):
    """Same display name on different external ids (never merged)."""
    entity_type: EntityType
    name: str
    external_ids: list[str]


class SailingCoverage(BaseModel):
    total: int = 0
    active_future: int = 0


class CoverageStats(BaseModel):
    cruise_lines: EntityCoverage
    ships: EntityCoverage
    ports: EntityCoverage
    regions: EntityCoverage
    sailings: SailingCoverage
    name_collisions: list[NameCollision] = Field(default_factory=list)
    generated_at: datetime


class StubEntry(BaseModel):
    id: str
    entity_type: EntityType
    external_id: str
    name: str
    created_at: datetime


class StubsReport(BaseModel):
    total_pending: int
    by_type: dict[EntityType, int]
    oldest_stubs: list[StubEntry]


class CleanupPreview(BaseModel):
    """Sailings a cleanup would delete."""
    cutoff_date: date
    sailings_to_delete: int
    oldest_end_date: Optional[date] = None
    newest_end_date: Optional[date] = None


class CleanupResult(BaseModel):
    cutoff_date: date
    sailings_deleted: int


class PurgeResult(BaseModel):
    rows_deleted: int
    purged_before: datetime


class RawStorageStats(BaseModel):
    """Raw archive size and expiry picture."""
    total_records: int
    expired: int
    expiring_within_24h: int
    generated_at: datetime
