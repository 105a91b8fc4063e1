"""
Canonical catalog models.

Cruise lines, ships, ports and regions keyed by the provider's external id.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from models.base import BaseSchema, TimestampMixin


class EntityType(str, Enum):
    """Canonical entity types."""
    CRUISE_LINE = "cruise_line"
    SHIP = "ship"
    PORT = "port"
    REGION = "region"

    @property
    def table(self) -> str:
        return ENTITY_TABLES[self]

    @property
    def label(self) -> str:
        return ENTITY_LABELS[self]


ENTITY_TABLES = {
    EntityType.CRUISE_LINE: "cruise_lines",
    EntityType.SHIP: "cruise_ships",
    EntityType.PORT: "cruise_ports",
    EntityType.REGION: "cruise_regions",
}

ENTITY_LABELS = {
    EntityType.CRUISE_LINE: "cruise line",
    EntityType.SHIP: "ship",
    EntityType.PORT: "port",
    EntityType.REGION: "region",
}

# Descriptive columns the pipeline may fill per type (besides name)
ENTITY_ATTRIBUTES: dict[EntityType, tuple[str, ...]] = {
    EntityType.CRUISE_LINE: ("code", "logo_url", "description"),
    EntityType.SHIP: ("cruise_line_id", "ship_class", "image_url", "description"),
    EntityType.PORT: ("latitude", "longitude", "country", "description"),
    EntityType.REGION: (),
}

# Column that counts as "key media" in coverage stats
KEY_MEDIA_COLUMNS: dict[EntityType, tuple[str, ...]] = {
    EntityType.CRUISE_LINE: ("logo_url",),
    EntityType.SHIP: ("image_url",),
    EntityType.PORT: ("latitude", "longitude"),
    EntityType.REGION: (),
}

# Columns a row needs before it counts as complete
MANDATORY_COLUMNS: dict[EntityType, tuple[str, ...]] = {
    EntityType.CRUISE_LINE: (),
    EntityType.SHIP: ("cruise_line_id",),
    EntityType.PORT: ("latitude", "longitude"),
    EntityType.REGION: (),
}

PLACEHOLDER_NAME_PREFIX = "Unknown "


def placeholder_name(entity_type: EntityType, external_id: str) -> str:
    """Name given to a stub created without one."""
    return f"{PLACEHOLDER_NAME_PREFIX}{entity_type.label} {external_id}"


def is_placeholder_name(name: Optional[str]) -> bool:
    return not name or name.startswith(PLACEHOLDER_NAME_PREFIX)


class CanonicalEntity(BaseSchema, TimestampMixin):
    """One canonical catalog row."""

    id: str = Field(..., description="Entity UUID")
    entity_type: EntityType
    provider: str
    external_id: str = Field(..., description="Provider identifier")
    name: str
    is_stub: bool = False
    needs_review: bool = False
    attributes: dict[str, Any] = Field(default_factory=dict)
    created: bool = Field(
        False,
        exclude=True,
        description="True when the resolving call inserted this row"
    )

    @classmethod
    def from_row(cls, entity_type: EntityType, row: dict, created: bool = False) -> "CanonicalEntity":
        return cls(
            id=row["id"],
            entity_type=entity_type,
            provider=row["provider"],
            external_id=row["provider_identifier"],
            name=row["name"],
            is_stub=bool(row.get("is_stub")),
            needs_review=bool(row.get("needs_review")),
            attributes={
                column: row.get(column)
                for column in ENTITY_ATTRIBUTES[entity_type]
            },
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            created=created,
        )


class ResolvedRefs(BaseModel):
    """Internal ids for every entity one sailing references."""

    cruise_line_id: str
    ship_id: str
    embark_port_id: Optional[str] = None
    disembark_port_id: Optional[str] = None
    port_ids: dict[str, str] = Field(
        default_factory=dict,
        description="Port external id -> internal id"
    )
    region_ids: dict[str, str] = Field(
        default_factory=dict,
        description="Region external id -> internal id"
    )
    stubs_created: int = 0


class ReferenceCacheStats(BaseModel):
    """Reference id cache usage since the last reset."""
    by_type: dict[EntityType, int]
    total_entries: int
    max_entries: int
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0


class CacheClearResult(BaseModel):
    cleared: bool = True
    entries_dropped: int = 0
