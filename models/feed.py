"""
Traveltek feed record models.

Raw models accept the provider's loose typing: numbers arriving as strings,
"" for unknown values and "00:00" for "no time". Their validators repair what
they can and note each repair on the validation context under "repairs".

Validated models are the strict internal shape consumed by the entity
resolver and the sailing upsert engine.
"""

import math
import re
from datetime import date
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from models.sailing import CabinCategory, CabinPrices

TIME_SENTINELS = frozenset({"00:00", "00:00:00"})
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")
TRUE_FLAGS = frozenset({"Y", "YES", "TRUE", "1"})

# Longest world cruises run about 250 nights
MAX_NIGHTS = 1000
# Per-person fares above this are feed garbage
MAX_PRICE = 10_000_000


# ===================
# ERRORS
# ===================

class FieldError(BaseModel):
    """One problem found in a feed record."""
    field: str
    code: str
    message: str
    repaired: bool = False


def record_repair(context: Optional[dict], field: str, code: str, message: str) -> None:
    """Append a repaired FieldError to a validation context."""
    if context is None:
        return
    context.setdefault("repairs", []).append(
        FieldError(field=field, code=code, message=message, repaired=True)
    )


# ===================
# COERCION HELPERS
# ===================

def blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def external_id(value: Any) -> Optional[str]:
    """
    Canonical string form of a provider id.

    42, 42.0, "42" and "042" are the same id; non-numeric ids such as
    "SHIP-42" are kept as given.
    """
    value = blank_to_none(value)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return str(value)
        value = int(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        # isdigit alone accepts superscripts and other non-ASCII digits
        return str(int(value)) if value.isascii() and value.isdigit() else value
    return None


def parse_int(value: Any) -> Optional[int]:
    """Parse an integer that may arrive as a string. Raises ValueError."""
    value = blank_to_none(value)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"not a number: {value!r}")
    if not number.is_integer():
        raise ValueError(f"not a whole number: {value!r}")
    return int(number)


def parse_number(value: Any) -> Optional[float]:
    """Parse a finite decimal number that may arrive as a string. Raises ValueError."""
    value = blank_to_none(value)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"not a number: {value!r}")
    if not math.isfinite(number):
        raise ValueError(f"not a finite number: {value!r}")
    return number


def parse_date(value: Any) -> Optional[date]:
    """Parse YYYY-MM-DD (a time suffix is ignored). Raises ValueError."""
    value = blank_to_none(value)
    if value is None:
        return None
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"not a date: {value!r}")
    return date.fromisoformat(value[:10])


def parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().upper() in TRUE_FLAGS


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


# ===================
# RAW FEED MODELS
# ===================

class FeedModel(BaseModel):
    """Base for raw provider shapes."""
    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
        populate_by_name=True
    )


def _text(value: Any, info: ValidationInfo) -> Optional[str]:
    value = blank_to_none(value)
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    record_repair(info.context, info.field_name, "not_text", f"dropped non-text value {type(value).__name__}")
    return None


def _required_id(value: Any) -> str:
    ext = external_id(value)
    if ext is None:
        raise ValueError("must be a non-empty id")
    return ext


def _coordinate(value: Any, info: ValidationInfo) -> Optional[float]:
    limit = 90 if info.field_name == "latitude" else 180
    try:
        number = parse_number(value)
    except ValueError:
        record_repair(info.context, info.field_name, "bad_coordinate", f"dropped unparseable {info.field_name} {value!r}")
        return None
    if number is not None and abs(number) > limit:
        record_repair(info.context, info.field_name, "bad_coordinate", f"dropped out-of-range {info.field_name} {number}")
        return None
    return number


def _price(value: Any, info: ValidationInfo) -> Optional[float]:
    try:
        amount = parse_number(value)
    except ValueError:
        record_repair(info.context, info.field_name, "bad_price", f"dropped unparseable price {value!r}")
        return None
    if amount is not None and amount <= 0:
        record_repair(info.context, info.field_name, "non_positive_price", f"dropped non-positive price {amount}")
        return None
    if amount is not None and amount > MAX_PRICE:
        record_repair(info.context, info.field_name, "bad_price", f"dropped implausible price {amount}")
        return None
    return amount


def _optional_date(value: Any, info: ValidationInfo) -> Optional[date]:
    try:
        return parse_date(value)
    except ValueError:
        record_repair(info.context, info.field_name, "bad_date", f"dropped unparseable date {value!r}")
        return None


class FeedLineContent(FeedModel):
    """Cruise line block embedded in every cruise record."""

    id: str
    name: str
    code: Optional[str] = None
    shortname: Optional[str] = None
    logo: Optional[str] = None
    description: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return _required_id(v)

    @field_validator("name", "code", "shortname", "logo", "description", mode="before")
    @classmethod
    def clean_text(cls, v, info: ValidationInfo):
        return _text(v, info)


class FeedShipContent(FeedModel):
    """Ship block; optional in the feed."""

    id: Optional[str] = None
    name: Optional[str] = None
    code: Optional[str] = None
    shipclass: Optional[str] = None
    description: Optional[str] = None
    defaultshipimage: Optional[str] = None
    defaultshipimagehd: Optional[str] = None
    defaultshipimage2k: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return external_id(v)

    @field_validator(
        "name", "code", "shipclass", "description",
        "defaultshipimage", "defaultshipimagehd", "defaultshipimage2k",
        mode="before"
    )
    @classmethod
    def clean_text(cls, v, info: ValidationInfo):
        return _text(v, info)

    @property
    def image_url(self) -> Optional[str]:
        return self.defaultshipimage or self.defaultshipimagehd or self.defaultshipimage2k


class FeedPortInfo(FeedModel):
    """Value of the ports map when the provider sends details instead of a bare name."""

    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country: Optional[str] = None
    description: Optional[str] = None

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def coerce_coordinates(cls, v, info: ValidationInfo):
        return _coordinate(v, info)

    @field_validator("name", "country", "description", mode="before")
    @classmethod
    def clean_text(cls, v, info: ValidationInfo):
        return _text(v, info)


class FeedItineraryPort(FeedModel):
    """One itinerary entry. day arrives as a string ("1")."""

    day: int
    orderid: int = 0
    portid: Optional[str] = None
    name: Optional[str] = None
    arrivedate: Optional[date] = None
    departdate: Optional[date] = None
    arrivetime: Optional[str] = None
    departtime: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country: Optional[str] = None
    description: Optional[str] = None

    @field_validator("day", mode="before")
    @classmethod
    def coerce_day(cls, v):
        day = parse_int(v)
        if day is None:
            raise ValueError("day is required")
        return day

    @field_validator("orderid", mode="before")
    @classmethod
    def coerce_order(cls, v, info: ValidationInfo):
        try:
            return parse_int(v) or 0
        except ValueError:
            record_repair(info.context, "orderid", "bad_order", f"defaulted unparseable orderid {v!r}")
            return 0

    @field_validator("portid", mode="before")
    @classmethod
    def coerce_port(cls, v):
        return external_id(v)

    @field_validator("arrivedate", "departdate", mode="before")
    @classmethod
    def coerce_dates(cls, v, info: ValidationInfo):
        return _optional_date(v, info)

    @field_validator("arrivetime", "departtime", mode="before")
    @classmethod
    def coerce_times(cls, v, info: ValidationInfo):
        v = blank_to_none(v)
        if v is None or v in TIME_SENTINELS:
            return None
        match = TIME_PATTERN.match(str(v))
        if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
            record_repair(info.context, info.field_name, "bad_time", f"dropped unparseable time {v!r}")
            return None
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def coerce_coordinates(cls, v, info: ValidationInfo):
        return _coordinate(v, info)

    @field_validator("name", "country", "description", mode="before")
    @classmethod
    def clean_text(cls, v, info: ValidationInfo):
        return _text(v, info)

    @property
    def is_sea_day(self) -> bool:
        if self.portid == "0":
            return True
        return bool(self.name) and "at sea" in self.name.lower()


class FeedCabin(FeedModel):
    """One entry of the cabins map."""

    cabincode: str = Field(validation_alias=AliasChoices("cabincode", "id"))
    name: Optional[str] = None
    codtype: Optional[str] = None
    description: Optional[str] = None
    imageurl: Optional[str] = None
    imageurlhd: Optional[str] = None
    colourcode: Optional[str] = None

    @field_validator("cabincode", mode="before")
    @classmethod
    def coerce_code(cls, v):
        code = blank_to_none(v)
        if code is None:
            raise ValueError("cabin code is required")
        return str(code)

    @field_validator("name", "codtype", "description", "imageurl", "imageurlhd", "colourcode", mode="before")
    @classmethod
    def clean_text(cls, v, info: ValidationInfo):
        return _text(v, info)


class FeedPricePoint(FeedModel):
    """One entry of the per-cabin prices map."""

    cabincode: str
    cabincategory: Optional[str] = None
    baseprice: Optional[float] = None
    taxes: Optional[float] = None

    @field_validator("cabincode", mode="before")
    @classmethod
    def coerce_code(cls, v):
        code = blank_to_none(v)
        if code is None:
            raise ValueError("cabin code is required")
        return str(code)

    @field_validator("cabincategory", mode="before")
    @classmethod
    def clean_text(cls, v, info: ValidationInfo):
        return _text(v, info)

    @field_validator("baseprice", mode="before")
    @classmethod
    def coerce_price(cls, v, info: ValidationInfo):
        return _price(v, info)

    @field_validator("taxes", mode="before")
    @classmethod
    def coerce_taxes(cls, v, info: ValidationInfo):
        try:
            taxes = parse_number(v)
        except ValueError:
            record_repair(info.context, "taxes", "bad_price", f"dropped unparseable taxes {v!r}")
            return None
        return taxes if taxes is not None and 0 <= taxes <= MAX_PRICE else None


class FeedPriceSet(FeedModel):
    """Cheapest per-category prices. The provider calls oceanview "outside"."""

    inside: Optional[float] = None
    outside: Optional[float] = None
    balcony: Optional[float] = None
    suite: Optional[float] = None

    @field_validator("inside", "outside", "balcony", "suite", mode="before")
    @classmethod
    def coerce_price(cls, v, info: ValidationInfo):
        return _price(v, info)


class FeedCheapest(FeedModel):
    prices: Optional[FeedPriceSet] = None
    cachedprices: Optional[FeedPriceSet] = None
    combined: Optional[FeedPriceSet] = None

    @field_validator("prices", "cachedprices", "combined", mode="before")
    @classmethod
    def drop_non_objects(cls, v, info: ValidationInfo):
        if v is None or isinstance(v, dict):
            return v
        record_repair(info.context, f"cheapest.{info.field_name}", "not_object", "dropped non-object price block")
        return None


class FeedCruise(FeedModel):
    """
    One Traveltek cruise document.

    Nested collections (itinerary, cabins, prices, shipcontent) stay loose
    here and are parsed entry by entry by the validator, so one bad entry is
    dropped instead of rejecting the sailing.
    """

    cruiseid: str = Field(validation_alias=AliasChoices("cruiseid", "codetocruiseid"))
    voyagecode: Optional[str] = None
    name: Optional[str] = None
    linecontent: FeedLineContent
    shipid: str
    shipcontent: Optional[Any] = None
    nights: Optional[int] = Field(None, validation_alias=AliasChoices("nights", "sailnights"))
    startdate: date = Field(validation_alias=AliasChoices("startdate", "saildate"))
    enddate: Optional[date] = None
    startportid: Optional[str] = None
    startportname: Optional[str] = None
    endportid: Optional[str] = None
    endportname: Optional[str] = None
    regionids: Optional[Any] = None
    regions: dict[str, Any] = Field(default_factory=dict)
    ports: dict[str, Any] = Field(default_factory=dict)
    itinerary: list[Any] = Field(default_factory=list)
    cabins: dict[str, Any] = Field(default_factory=dict)
    prices: dict[str, Any] = Field(default_factory=dict)
    cheapest: Optional[FeedCheapest] = None
    cheapestinside: Optional[float] = None
    cheapestoutside: Optional[float] = None
    cheapestbalcony: Optional[float] = None
    cheapestsuite: Optional[float] = None
    nofly: bool = False
    departuk: bool = False
    marketid: Optional[int] = None

    @field_validator("cruiseid", "shipid", mode="before")
    @classmethod
    def coerce_identity(cls, v):
        return _required_id(v)

    @field_validator("startportid", "endportid", mode="before")
    @classmethod
    def coerce_port_ids(cls, v):
        port_id = external_id(v)
        return None if port_id == "0" else port_id

    @field_validator("voyagecode", "name", "startportname", "endportname", mode="before")
    @classmethod
    def clean_text(cls, v, info: ValidationInfo):
        return _text(v, info)

    @field_validator("nights", mode="before")
    @classmethod
    def coerce_nights(cls, v, info: ValidationInfo):
        try:
            nights = parse_int(v)
        except ValueError:
            record_repair(info.context, "nights", "bad_nights", f"ignored unparseable nights {v!r}")
            return None
        if nights is not None and nights < 0:
            record_repair(info.context, "nights", "negative_nights", f"clamped nights {nights} to 0")
            return 0
        if nights is not None and nights > MAX_NIGHTS:
            record_repair(info.context, "nights", "bad_nights", f"ignored implausible nights {nights}")
            return None
        return nights

    @field_validator("startdate", mode="before")
    @classmethod
    def coerce_startdate(cls, v):
        start = parse_date(v)
        if start is None:
            raise ValueError("startdate is required")
        return start

    @field_validator("enddate", mode="before")
    @classmethod
    def coerce_enddate(cls, v, info: ValidationInfo):
        return _optional_date(v, info)

    @field_validator("regions", "ports", "cabins", "prices", mode="before")
    @classmethod
    def coerce_maps(cls, v, info: ValidationInfo):
        if v is None:
            return {}
        if isinstance(v, dict):
            return v
        # The provider sends [] for an empty map
        if isinstance(v, list) and not v:
            return {}
        record_repair(info.context, info.field_name, "not_object", f"dropped non-object {info.field_name}")
        return {}

    @field_validator("itinerary", mode="before")
    @classmethod
    def coerce_itinerary(cls, v, info: ValidationInfo):
        if v is None:
            return []
        if isinstance(v, list):
            return v
        record_repair(info.context, "itinerary", "not_list", "dropped non-list itinerary")
        return []

    @field_validator("cheapest", mode="before")
    @classmethod
    def coerce_cheapest(cls, v, info: ValidationInfo):
        if v is None or isinstance(v, dict):
            return v
        record_repair(info.context, "cheapest", "not_object", "dropped non-object cheapest block")
        return None

    @field_validator("cheapestinside", "cheapestoutside", "cheapestbalcony", "cheapestsuite", mode="before")
    @classmethod
    def coerce_flat_prices(cls, v, info: ValidationInfo):
        return _price(v, info)

    @field_validator("nofly", "departuk", mode="before")
    @classmethod
    def coerce_flags(cls, v):
        return parse_flag(v)

    @field_validator("marketid", mode="before")
    @classmethod
    def coerce_market(cls, v, info: ValidationInfo):
        try:
            return parse_int(v)
        except ValueError:
            record_repair(info.context, "marketid", "bad_market", f"dropped unparseable marketid {v!r}")
            return None


# ===================
# VALIDATED MODELS
# ===================

class EntityRef(BaseModel):
    """Reference to a canonical entity by provider id, with whatever the feed knows about it."""
    external_id: str
    name: Optional[str] = None
    attrs: dict[str, Any] = Field(default_factory=dict)


class ValidatedStop(BaseModel):
    day_number: int = Field(..., ge=1)
    sequence_order: int = Field(..., ge=1)
    port_external_id: Optional[str] = None
    port_name: Optional[str] = None
    is_sea_day: bool = False
    arrival_date: Optional[date] = None
    arrival_time: Optional[str] = None
    departure_date: Optional[date] = None
    departure_time: Optional[str] = None


class PricePoint(BaseModel):
    cabin_code: str
    cabin_category: Optional[CabinCategory] = None
    price_cents: int = Field(..., gt=0)
    taxes_cents: Optional[int] = Field(None, ge=0)


class CabinTypeRef(BaseModel):
    cabin_code: str
    name: Optional[str] = None
    category: Optional[CabinCategory] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    colour_code: Optional[str] = None


class ValidatedSailing(BaseModel):
    """A feed record that passed validation. Every field is typed and consistent."""

    external_id: str
    voyage_code: Optional[str] = None
    name: str
    line: EntityRef
    ship: EntityRef
    embark_port: Optional[EntityRef] = None
    disembark_port: Optional[EntityRef] = None
    sail_date: date
    end_date: date
    nights: int = Field(..., ge=0)
    sea_days: int = Field(0, ge=0)
    stops: list[ValidatedStop] = Field(default_factory=list)
    itinerary_ports: list[EntityRef] = Field(default_factory=list)
    regions: list[EntityRef] = Field(default_factory=list)
    prices: CabinPrices = Field(default_factory=CabinPrices)
    price_points: list[PricePoint] = Field(default_factory=list)
    cabin_types: list[CabinTypeRef] = Field(default_factory=list)
    no_fly: bool = False
    depart_uk: bool = False
    market_id: Optional[int] = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.sail_date:
            raise ValueError("end_date must not be before sail_date")
        return self


class ValidationResult(BaseModel):
    """Tagged result: record is None when the feed record was rejected."""

    record: Optional[ValidatedSailing] = None
    errors: list[FieldError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.record is not None

    @property
    def repairs(self) -> list[FieldError]:
        return [e for e in self.errors if e.repaired]

    @property
    def rejections(self) -> list[FieldError]:
        return [e for e in self.errors if not e.repaired]

    def summary(self) -> str:
        """One-line description of why the record was rejected."""
        return "; ".join(f"{e.field}: {e.message}" for e in self.rejections)
