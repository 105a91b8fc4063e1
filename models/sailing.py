"""
Sailing models.

Stored sailings, their itinerary stops and cabin price points.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from models.base import BaseSchema


class CabinCategory(str, Enum):
    """Cabin categories with a cheapest price on the sailing row."""
    INSIDE = "inside"
    OCEANVIEW = "oceanview"
    BALCONY = "balcony"
    SUITE = "suite"

    @property
    def price_column(self) -> str:
        return f"cheapest_{self.value}_cents"


CHEAPEST_PRICE_COLUMN = "cheapest_price_cents"

# Provider cabin type words -> category
CABIN_CATEGORY_ALIASES = {
    "inside": CabinCategory.INSIDE,
    "interior": CabinCategory.INSIDE,
    "outside": CabinCategory.OCEANVIEW,
    "oceanview": CabinCategory.OCEANVIEW,
    "ocean view": CabinCategory.OCEANVIEW,
    "balcony": CabinCategory.BALCONY,
    "verandah": CabinCategory.BALCONY,
    "suite": CabinCategory.SUITE,
}


def normalize_cabin_category(value: Optional[str]) -> Optional[CabinCategory]:
    if not value:
        return None
    return CABIN_CATEGORY_ALIASES.get(value.strip().lower())


class CabinPrices(BaseModel):
    """Cheapest per-category prices in integer cents (None = not sold / unknown)."""

    inside_cents: Optional[int] = Field(None, gt=0)
    oceanview_cents: Optional[int] = Field(None, gt=0)
    balcony_cents: Optional[int] = Field(None, gt=0)
    suite_cents: Optional[int] = Field(None, gt=0)

    def for_category(self, category: CabinCategory) -> Optional[int]:
        return getattr(self, f"{category.value}_cents")

    @property
    def cheapest_cents(self) -> Optional[int]:
        """Minimum of the non-null category prices, None when all are None."""
        known = [p for p in (
            self.inside_cents,
            self.oceanview_cents,
            self.balcony_cents,
            self.suite_cents,
        ) if p is not None]
        return min(known) if known else None


class SailingUpsertResult(BaseModel):
    """Outcome of writing one sailing."""
    sailing_id: str
    external_id: str
    created: bool


# ===================
# READ MODELS
# ===================

class StopResponse(BaseSchema):
    """One itinerary day."""
    day_number: int
    sequence_order: int
    port_id: Optional[str] = None
    port_name: Optional[str] = None
    is_sea_day: bool = False
    arrival_date: Optional[date] = None
    arrival_time: Optional[str] = None
    departure_date: Optional[date] = None
    departure_time: Optional[str] = None


class SailingRegionResponse(BaseSchema):
    region_id: str
    name: Optional[str] = None
    is_primary: bool = False


class CabinPricePointResponse(BaseSchema):
    cabin_code: str
    cabin_category: Optional[CabinCategory] = None
    price_cents: int
    taxes_cents: Optional[int] = None


class SailingDetail(BaseSchema):
    """Full sailing view with itinerary, regions and price points."""

    id: str
    external_id: str
    name: str
    voyage_code: Optional[str] = None
    cruise_line_id: str
    cruise_line_name: Optional[str] = None
    ship_id: str
    ship_name: Optional[str] = None
    ship_image_url: Optional[str] = None
    embark_port_id: Optional[str] = None
    embark_port_name: Optional[str] = None
    disembark_port_id: Optional[str] = None
    disembark_port_name: Optional[str] = None
    sail_date: date
    end_date: date
    nights: int
    sea_days: int = 0
    prices: CabinPrices
    cheapest_price_cents: Optional[int] = None
    no_fly: bool = False
    depart_uk: bool = False
    is_active: bool = True
    last_synced_at: Optional[datetime] = None
    itinerary: list[StopResponse] = Field(default_factory=list)
    regions: list[SailingRegionResponse] = Field(default_factory=list)
    cabin_prices: list[CabinPricePointResponse] = Field(default_factory=list)
