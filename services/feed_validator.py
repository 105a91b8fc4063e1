"""
Feed schema validator.

Turns one raw Traveltek document into a ValidatedSailing, or explains why it
was rejected. Pure: no I/O, and data problems are returned, never raised.
"""

from datetime import timedelta
from typing import Any, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from models.feed import (
    CabinTypeRef,
    EntityRef,
    FeedCabin,
    FeedCruise,
    FeedItineraryPort,
    FeedPortInfo,
    FeedPricePoint,
    FeedShipContent,
    FieldError,
    PricePoint,
    ValidatedSailing,
    ValidatedStop,
    ValidationResult,
    blank_to_none,
    external_id,
    record_repair,
    to_cents,
)
from models.sailing import CabinCategory, CabinPrices, normalize_cabin_category

logger = structlog.get_logger(__name__)

# First block with a value wins, per category
PRICE_BLOCK_ORDER = ("combined", "prices", "cachedprices")

PROVIDER_CATEGORY_FIELDS = {
    CabinCategory.INSIDE: "inside",
    CabinCategory.OCEANVIEW: "outside",
    CabinCategory.BALCONY: "balcony",
    CabinCategory.SUITE: "suite",
}


def validate(raw: Any) -> ValidationResult:
    """
    Validate one raw feed record.

    Args:
        raw: Decoded JSON document (anything; non-objects are rejected)

    Returns:
        ValidationResult with the record, or record=None and the reasons.
        Repairs are listed in errors with repaired=True either way.
    """
    if not isinstance(raw, dict):
        return ValidationResult(errors=[FieldError(
            field="$",
            code="not_object",
            message=f"expected a JSON object, got {type(raw).__name__}"
        )])

    context: dict = {"repairs": []}

    try:
        cruise = FeedCruise.model_validate(raw, context=context)
    except PydanticValidationError as e:
        errors = context["repairs"] + _field_errors(e)
        logger.info(
            "feed_record_rejected",
            cruise_id=raw.get("cruiseid"),
            errors=len(errors)
        )
        return ValidationResult(errors=errors)
    except (TypeError, ArithmeticError) as e:
        return _unusable(raw.get("cruiseid"), e, context)

    try:
        record = _build_sailing(cruise, raw, context)
    except PydanticValidationError as e:
        return ValidationResult(errors=context["repairs"] + _field_errors(e))
    except (ValueError, TypeError, ArithmeticError) as e:
        # e.g. an end date derived past date.max
        return _unusable(cruise.cruiseid, e, context)

    repairs = context["repairs"]
    if repairs:
        logger.debug(
            "feed_record_repaired",
            external_id=record.external_id,
            repairs=[r.code for r in repairs]
        )

    return ValidationResult(record=record, errors=repairs)


def _unusable(cruise_id: Any, error: Exception, context: dict) -> ValidationResult:
    logger.info(
        "feed_record_rejected",
        cruise_id=cruise_id,
        error=str(error),
        error_type=type(error).__name__
    )
    return ValidationResult(errors=context["repairs"] + [FieldError(
        field="$",
        code="unusable_record",
        message=f"{type(error).__name__}: {error}"
    )])


def _field_errors(error: PydanticValidationError) -> list[FieldError]:
    return [
        FieldError(
            field=".".join(str(part) for part in err["loc"]) or "$",
            code=err["type"],
            message=err["msg"],
        )
        for err in error.errors()
    ]


def _clean_name(value: Any) -> Optional[str]:
    value = blank_to_none(value)
    return value if isinstance(value, str) else None


def _build_sailing(cruise: FeedCruise, raw: dict, context: dict) -> ValidatedSailing:
    end_date, nights = _reconcile_dates(cruise, context)
    ports = _PortCatalog(cruise, context)
    stops = _build_stops(cruise, ports, context)

    embark = ports.ref(cruise.startportid, cruise.startportname)
    disembark = ports.ref(cruise.endportid, cruise.endportname)
    port_stops = [s for s in stops if s.port_external_id]
    if embark is None and port_stops:
        embark = ports.ref(port_stops[0].port_external_id, port_stops[0].port_name)
    if disembark is None and port_stops:
        disembark = ports.ref(port_stops[-1].port_external_id, port_stops[-1].port_name)

    line = cruise.linecontent

    return ValidatedSailing(
        external_id=cruise.cruiseid,
        voyage_code=cruise.voyagecode,
        name=cruise.name or cruise.voyagecode or f"Sailing {cruise.cruiseid}",
        line=EntityRef(
            external_id=line.id,
            name=line.name,
            attrs={
                "code": line.code,
                "logo_url": line.logo,
                "description": line.description,
            },
        ),
        ship=_ship_ref(cruise, context),
        embark_port=embark,
        disembark_port=disembark,
        sail_date=cruise.startdate,
        end_date=end_date,
        nights=nights,
        sea_days=sum(1 for s in stops if s.is_sea_day),
        stops=stops,
        itinerary_ports=ports.all_refs(),
        regions=_build_regions(cruise, context),
        prices=_cheapest_prices(cruise),
        price_points=_build_price_points(cruise, context),
        cabin_types=_build_cabin_types(cruise, context),
        no_fly=cruise.nofly,
        depart_uk=cruise.departuk,
        market_id=cruise.marketid,
        raw=raw,
    )


def _reconcile_dates(cruise: FeedCruise, context: dict) -> tuple:
    """
    Settle end date and nights.

    Both dates given: nights is the span. Otherwise the (clamped) feed nights
    is kept and the end date derived from it.
    """
    sail = cruise.startdate
    end = cruise.enddate
    nights = cruise.nights

    if end is not None and end < sail:
        record_repair(context, "enddate", "end_before_start", f"enddate {end} is before startdate {sail}")
        end = None

    if end is not None:
        span = (end - sail).days
        if nights is not None and nights != span:
            record_repair(context, "nights", "nights_mismatch", f"nights {nights} replaced by date span {span}")
        return end, span

    nights = nights or 0
    return sail + timedelta(days=nights), nights


def _ship_ref(cruise: FeedCruise, context: dict) -> EntityRef:
    content = None
    if isinstance(cruise.shipcontent, dict):
        try:
            content = FeedShipContent.model_validate(cruise.shipcontent, context=context)
        except PydanticValidationError:
            record_repair(context, "shipcontent", "bad_entry", "dropped unparseable ship content")
    elif cruise.shipcontent is not None:
        record_repair(context, "shipcontent", "not_object", "dropped non-object ship content")

    if content is None:
        return EntityRef(external_id=cruise.shipid)

    return EntityRef(
        external_id=cruise.shipid,
        name=content.name,
        attrs={
            "ship_class": content.shipclass,
            "image_url": content.image_url,
            "description": content.description,
        },
    )


class _PortCatalog:
    """Port refs seen in one record, merged from the ports map and itinerary entries."""

    def __init__(self, cruise: FeedCruise, context: dict):
        self._cruise = cruise
        self._context = context
        self._refs: dict[str, EntityRef] = {}

    def _lookup(self, port_id: str) -> dict:
        info = self._cruise.ports.get(port_id)
        if isinstance(info, str):
            return {"name": _clean_name(info)}
        if isinstance(info, dict):
            try:
                return FeedPortInfo.model_validate(info, context=self._context).model_dump()
            except PydanticValidationError:
                record_repair(self._context, f"ports.{port_id}", "bad_entry", "dropped unparseable port info")
        return {}

    def ref(self, port_id: Optional[str], name: Optional[str] = None, **attrs) -> Optional[EntityRef]:
        if not port_id:
            return None

        ref = self._refs.get(port_id)
        if ref is None:
            info = self._lookup(port_id)
            ref = EntityRef(external_id=port_id, name=info.pop("name", None))
            ref.attrs = {k: v for k, v in info.items() if v is not None}
            self._refs[port_id] = ref

        if name and not ref.name:
            ref.name = name
        for key, value in attrs.items():
            if value is not None and ref.attrs.get(key) is None:
                ref.attrs[key] = value
        return ref

    def all_refs(self) -> list[EntityRef]:
        return list(self._refs.values())


def _build_stops(cruise: FeedCruise, ports: _PortCatalog, context: dict) -> list[ValidatedStop]:
    entries: list[FeedItineraryPort] = []
    for index, entry in enumerate(cruise.itinerary):
        if not isinstance(entry, dict):
            record_repair(context, f"itinerary[{index}]", "bad_entry", "dropped non-object itinerary entry")
            continue
        try:
            entries.append(FeedItineraryPort.model_validate(entry, context=context))
        except PydanticValidationError as e:
            record_repair(
                context,
                f"itinerary[{index}]",
                "bad_entry",
                f"dropped itinerary entry: {e.errors()[0]['msg']}"
            )

    entries.sort(key=lambda p: (p.day, p.orderid))

    stops: list[ValidatedStop] = []
    seen_days: set[int] = set()
    last_arrival = None

    for entry in entries:
        if entry.day < 1:
            record_repair(context, "itinerary.day", "bad_day", f"dropped entry with day {entry.day}")
            continue
        if entry.day in seen_days:
            record_repair(context, "itinerary.day", "duplicate_day", f"dropped duplicate day {entry.day}")
            continue
        seen_days.add(entry.day)

        arrival = entry.arrivedate
        if arrival is not None and last_arrival is not None and arrival < last_arrival:
            record_repair(context, "itinerary.arrivedate", "out_of_order_date", f"dropped arrival {arrival} on day {entry.day}")
            arrival = None
        if arrival is not None:
            last_arrival = arrival

        departure = entry.departdate
        if departure is not None and arrival is not None and departure < arrival:
            record_repair(context, "itinerary.departdate", "out_of_order_date", f"dropped departure {departure} on day {entry.day}")
            departure = None

        sea_day = entry.is_sea_day
        port_ref = None
        if not sea_day:
            port_ref = ports.ref(
                entry.portid,
                entry.name,
                latitude=entry.latitude,
                longitude=entry.longitude,
                country=entry.country,
                description=entry.description,
            )

        stops.append(ValidatedStop(
            day_number=entry.day,
            sequence_order=len(stops) + 1,
            port_external_id=port_ref.external_id if port_ref else None,
            port_name=entry.name or (port_ref.name if port_ref else None),
            is_sea_day=sea_day,
            arrival_date=arrival,
            arrival_time=entry.arrivetime,
            departure_date=departure,
            departure_time=entry.departtime,
        ))

    return stops


def _is_numeric_id(value: Optional[str]) -> bool:
    return value is not None and value.isascii() and value.isdigit()


def _split_ids(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, (int, float)):
        return [value]
    return [part for part in str(value).split(",") if part.strip()]


def _build_regions(cruise: FeedCruise, context: dict) -> list[EntityRef]:
    """Regions in feed order; the first one is the primary region."""
    names: dict[str, Optional[str]] = {}
    for key, name in cruise.regions.items():
        region_id = external_id(key)
        if not _is_numeric_id(region_id):
            record_repair(context, f"regions.{key}", "non_numeric_region", f"dropped region key {key!r}")
            continue
        names[region_id] = _clean_name(name)

    ordered: list[str] = []
    for value in _split_ids(cruise.regionids):
        region_id = external_id(value.strip() if isinstance(value, str) else value)
        if not _is_numeric_id(region_id):
            record_repair(context, "regionids", "non_numeric_region", f"dropped region id {value!r}")
            continue
        if region_id not in ordered:
            ordered.append(region_id)
    for region_id in names:
        if region_id not in ordered:
            ordered.append(region_id)

    return [EntityRef(external_id=r, name=names.get(r)) for r in ordered]


def _cheapest_prices(cruise: FeedCruise) -> CabinPrices:
    values: dict[str, Optional[int]] = {}

    for category, field in PROVIDER_CATEGORY_FIELDS.items():
        amount = None
        if cruise.cheapest is not None:
            for block_name in PRICE_BLOCK_ORDER:
                block = getattr(cruise.cheapest, block_name)
                if block is not None and getattr(block, field) is not None:
                    amount = getattr(block, field)
                    break
        if amount is None:
            amount = getattr(cruise, f"cheapest{field}")

        cents = to_cents(amount) if amount is not None else None
        values[f"{category.value}_cents"] = cents if cents else None

    return CabinPrices(**values)


def _build_price_points(cruise: FeedCruise, context: dict) -> list[PricePoint]:
    """Per-cabin prices; the lowest price wins when a cabin code repeats."""
    points: dict[str, PricePoint] = {}

    for key, entry in cruise.prices.items():
        if not isinstance(entry, dict):
            record_repair(context, f"prices.{key}", "bad_entry", "dropped non-object price entry")
            continue
        try:
            price = FeedPricePoint.model_validate(entry, context=context)
        except PydanticValidationError:
            record_repair(context, f"prices.{key}", "bad_entry", "dropped price entry without cabin code")
            continue
        if price.baseprice is None:
            continue
        cents = to_cents(price.baseprice)
        if cents <= 0:
            continue

        point = PricePoint(
            cabin_code=price.cabincode,
            cabin_category=normalize_cabin_category(price.cabincategory),
            price_cents=cents,
            taxes_cents=to_cents(price.taxes) if price.taxes is not None else None,
        )
        existing = points.get(point.cabin_code)
        if existing is None or point.price_cents < existing.price_cents:
            points[point.cabin_code] = point

    return list(points.values())


def _build_cabin_types(cruise: FeedCruise, context: dict) -> list[CabinTypeRef]:
    cabins: dict[str, CabinTypeRef] = {}

    for key, entry in cruise.cabins.items():
        if not isinstance(entry, dict):
            record_repair(context, f"cabins.{key}", "bad_entry", "dropped non-object cabin entry")
            continue
        try:
            cabin = FeedCabin.model_validate(entry, context=context)
        except PydanticValidationError:
            record_repair(context, f"cabins.{key}", "bad_entry", "dropped cabin without code")
            continue

        cabins.setdefault(cabin.cabincode, CabinTypeRef(
            cabin_code=cabin.cabincode,
            name=cabin.name,
            category=normalize_cabin_category(cabin.codtype),
            description=cabin.description,
            image_url=cabin.imageurl or cabin.imageurlhd,
            colour_code=cabin.colourcode,
        ))

    return list(cabins.values())
