"""
Sailing search schemas.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from models.base import BaseSchema, Pagination
from models.sailing import CabinCategory, CabinPrices


class SortField(str, Enum):
    SAIL_DATE = "sail_date"
    PRICE = "price"
    NIGHTS = "nights"
    SHIP_NAME = "ship_name"
    LINE_NAME = "line_name"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


def _canonical_uuid(value) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        raise ValueError(f"not a valid id: {value!r}")


class SailingSearchFilters(BaseSchema):
    """Conjunctive search filters. Every field is optional."""

    q: Optional[str] = Field(None, max_length=200, description="Ship, sailing, line or port name")
    cruise_line_id: Optional[str] = None
    ship_id: Optional[str] = None
    region_id: Optional[str] = None
    embark_port_id: Optional[str] = None
    port_ids: list[str] = Field(default_factory=list, description="Every one of these ports is visited")
    sail_date_from: Optional[date] = None
    sail_date_to: Optional[date] = None
    nights_min: Optional[int] = Field(None, ge=0)
    nights_max: Optional[int] = Field(None, ge=0)
    price_min_cents: Optional[int] = Field(None, ge=0)
    price_max_cents: Optional[int] = Field(None, ge=0)
    cabin_category: Optional[CabinCategory] = None
    include_past: bool = False

    @field_validator("cruise_line_id", "ship_id", "region_id", "embark_port_id", mode="before")
    @classmethod
    def check_id(cls, v):
        if v is None or v == "":
            return None
        return _canonical_uuid(v)

    @field_validator("port_ids", mode="before")
    @classmethod
    def check_port_ids(cls, v):
        return [_canonical_uuid(port_id) for port_id in v or []]

    @model_validator(mode="after")
    def check_ranges(self):
        if self.sail_date_from and self.sail_date_to and self.sail_date_from > self.sail_date_to:
            raise ValueError("sail_date_from must not be after sail_date_to")
        if self.nights_min is not None and self.nights_max is not None and self.nights_min > self.nights_max:
            raise ValueError("nights_min must not exceed nights_max")
        if (
            self.price_min_cents is not None
            and self.price_max_cents is not None
            and self.price_min_cents > self.price_max_cents
        ):
            raise ValueError("price_min_cents must not exceed price_max_cents")
        return self


class SailingSearchItem(BaseModel):
    """One search row with display fields."""
    id: str
    external_id: str
    name: str
    voyage_code: Optional[str] = None
    cruise_line_id: str
    cruise_line_name: Optional[str] = None
    cruise_line_logo_url: Optional[str] = None
    ship_id: str
    ship_name: Optional[str] = None
    ship_image_url: Optional[str] = None
    embark_port_id: Optional[str] = None
    embark_port_name: Optional[str] = None
    disembark_port_name: Optional[str] = None
    sail_date: date
    end_date: date
    nights: int
    sea_days: int = 0
    prices: CabinPrices
    cheapest_price_cents: Optional[int] = None
    last_synced_at: Optional[datetime] = None
    prices_updating: bool = False


class SearchSyncInfo(BaseModel):
    sync_in_progress: bool = False
    last_synced_at: Optional[datetime] = None


class SailingSearchPage(BaseModel):
    items: list[SailingSearchItem]
    pagination: Pagination
    sync: SearchSyncInfo
    sort_by: SortField
    sort_dir: SortDirection


class FilterOption(BaseModel):
    id: str
    name: str


class FilterOptions(BaseModel):
    """Values the search UI can offer."""
    cruise_lines: list[FilterOption]
    ships: list[FilterOption]
    regions: list[FilterOption]
    embark_ports: list[FilterOption]
    sail_date_min: Optional[date] = None
    sail_date_max: Optional[date] = None
    nights_min: Optional[int] = None
    nights_max: Optional[int] = None
    price_min_cents: Optional[int] = None
    price_max_cents: Optional[int] = None
