"""
Sailing upsert engine.

Writes sailings keyed by provider id, replaces their itinerary, regions and
cabin price points in one transaction, and keeps ship cabin types current.
Also owns deletion of sailings that have already ended.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

import httpx
import structlog
from postgrest.exceptions import APIError

from config import get_supabase_client, settings
from exceptions import DatabaseError, SailingUpsertError, StorageUnavailableError
from models.catalog import ResolvedRefs
from models.coverage import CleanupPreview, CleanupResult
from models.feed import ValidatedSailing
from models.sailing import CHEAPEST_PRICE_COLUMN, CabinCategory, SailingUpsertResult

logger = structlog.get_logger(__name__)

CONFLICT_TARGET = "provider,provider_identifier"
CABIN_TYPE_CONFLICT_TARGET = "ship_id,cabin_code"
REPLACE_DETAILS_RPC = "replace_sailing_details"


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SailingUpsertService:
    """
    Sailing persistence.

    Only feed-owned columns are written, so columns added for operators
    survive re-syncs.
    """

    def __init__(self, provider: Optional[str] = None):
        self.db = get_supabase_client()
        self.provider = provider or settings.feed_provider
        self.table = "cruise_sailings"
        self.cabin_types_table = "cruise_ship_cabin_types"

    def build_row(self, sailing: ValidatedSailing, refs: ResolvedRefs) -> dict:
        """Feed-owned sailing columns."""
        prices = sailing.prices
        row = {
            "provider": self.provider,
            "provider_identifier": sailing.external_id,
            "cruise_line_id": refs.cruise_line_id,
            "ship_id": refs.ship_id,
            "embark_port_id": refs.embark_port_id,
            "disembark_port_id": refs.disembark_port_id,
            "embark_port_name": sailing.embark_port.name if sailing.embark_port else None,
            "disembark_port_name": sailing.disembark_port.name if sailing.disembark_port else None,
            "name": sailing.name,
            "voyage_code": sailing.voyage_code,
            "sail_date": _iso(sailing.sail_date),
            "end_date": _iso(sailing.end_date),
            "nights": sailing.nights,
            "sea_days": sailing.sea_days,
            CHEAPEST_PRICE_COLUMN: prices.cheapest_cents,
            "no_fly": sailing.no_fly,
            "depart_uk": sailing.depart_uk,
            "market_id": sailing.market_id,
            "is_active": True,
            "last_synced_at": datetime.now(timezone.utc).isoformat(),
        }
        for category in CabinCategory:
            row[category.price_column] = prices.for_category(category)
        return row

    def build_details(self, sailing: ValidatedSailing, refs: ResolvedRefs) -> dict:
        """Child rows for replace_sailing_details."""
        stops = [
            {
                "day_number": stop.day_number,
                "sequence_order": stop.sequence_order,
                "port_id": refs.port_ids.get(stop.port_external_id) if stop.port_external_id else None,
                "port_name": stop.port_name,
                "is_sea_day": stop.is_sea_day,
                "arrival_date": _iso(stop.arrival_date),
                "arrival_time": stop.arrival_time,
                "departure_date": _iso(stop.departure_date),
                "departure_time": stop.departure_time,
            }
            for stop in sailing.stops
        ]
        regions = [
            {
                "region_id": refs.region_ids[ref.external_id],
                "is_primary": index == 0,
            }
            for index, ref in enumerate(sailing.regions)
            if ref.external_id in refs.region_ids
        ]
        prices = [
            {
                "cabin_code": point.cabin_code,
                "cabin_category": point.cabin_category.value if point.cabin_category else None,
                "price_cents": point.price_cents,
                "taxes_cents": point.taxes_cents,
            }
            for point in sailing.price_points
        ]
        return {"p_stops": stops, "p_regions": regions, "p_prices": prices}

    def upsert(self, sailing: ValidatedSailing, refs: ResolvedRefs) -> SailingUpsertResult:
        """
        Insert or update one sailing and replace its children.

        Idempotent per provider id: the internal id is preserved.

        Raises:
            SailingUpsertError: Storage rejected the sailing
            StorageUnavailableError: Database unreachable
        """
        row = self.build_row(sailing, refs)

        try:
            existing = (
                self.db.table(self.table)
                .select("id")
                .eq("provider", self.provider)
                .eq("provider_identifier", sailing.external_id)
                .limit(1)
                .execute()
            )
            created = not existing.data

            result = (
                self.db.table(self.table)
                .upsert(row, on_conflict=CONFLICT_TARGET)
                .execute()
            )
            if not result.data:
                raise SailingUpsertError(
                    "Sailing upsert returned no row",
                    sailing_external_id=sailing.external_id
                )
            sailing_id = result.data[0]["id"]

            self.db.rpc(
                REPLACE_DETAILS_RPC,
                {"p_sailing_id": sailing_id, **self.build_details(sailing, refs)}
            ).execute()

            self._upsert_cabin_types(sailing, refs.ship_id)

        except httpx.TransportError as e:
            logger.error("sailing_upsert_unavailable", external_id=sailing.external_id, error=str(e))
            raise StorageUnavailableError(f"Database unreachable while writing sailing: {e}")
        except APIError as e:
            logger.warning(
                "sailing_upsert_rejected",
                external_id=sailing.external_id,
                code=e.code,
                error=e.message
            )
            raise SailingUpsertError(
                e.message or "Sailing rejected by database",
                sailing_external_id=sailing.external_id,
                details={"code": e.code}
            )

        logger.debug(
            "sailing_upserted",
            external_id=sailing.external_id,
            sailing_id=sailing_id,
            created=created,
            stops=len(sailing.stops)
        )

        return SailingUpsertResult(
            sailing_id=sailing_id,
            external_id=sailing.external_id,
            created=created
        )

    def _upsert_cabin_types(self, sailing: ValidatedSailing, ship_id: str) -> None:
        if not sailing.cabin_types:
            return
        rows = [
            {
                "ship_id": ship_id,
                "cabin_code": cabin.cabin_code,
                "name": cabin.name,
                "category": cabin.category.value if cabin.category else None,
                "description": cabin.description,
                "image_url": cabin.image_url,
                "colour_code": cabin.colour_code,
            }
            for cabin in sailing.cabin_types
        ]
        (
            self.db.table(self.cabin_types_table)
            .upsert(rows, on_conflict=CABIN_TYPE_CONFLICT_TARGET)
            .execute()
        )

    # ===================
    # PAST-SAILING CLEANUP
    # ===================

    def _cutoff(self, days_buffer: int) -> date:
        return date.today() - timedelta(days=days_buffer)

    def preview_cleanup(self, days_buffer: int = 0) -> CleanupPreview:
        """Count sailings that ended before today - days_buffer."""
        cutoff = self._cutoff(days_buffer)

        try:
            oldest = (
                self.db.table(self.table)
                .select("end_date", count="exact")
                .lt("end_date", cutoff.isoformat())
                .order("end_date")
                .limit(1)
                .execute()
            )
            newest = (
                self.db.table(self.table)
                .select("end_date")
                .lt("end_date", cutoff.isoformat())
                .order("end_date", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("cleanup_preview_failed", error=str(e))
            raise DatabaseError("select", str(e))

        return CleanupPreview(
            cutoff_date=cutoff,
            sailings_to_delete=oldest.count or 0,
            oldest_end_date=oldest.data[0]["end_date"] if oldest.data else None,
            newest_end_date=newest.data[0]["end_date"] if newest.data else None,
        )

    def cleanup_past_sailings(self, days_buffer: int = 0) -> CleanupResult:
        """Delete sailings that ended before the cutoff. Children cascade."""
        cutoff = self._cutoff(days_buffer)

        try:
            result = (
                self.db.table(self.table)
                .delete()
                .lt("end_date", cutoff.isoformat())
                .execute()
            )
        except Exception as e:
            logger.error("cleanup_past_sailings_failed", error=str(e))
            raise DatabaseError("delete", str(e))

        deleted = len(result.data or [])
        logger.info("past_sailings_deleted", cutoff=cutoff.isoformat(), deleted=deleted)
        return CleanupResult(cutoff_date=cutoff, sailings_deleted=deleted)


# Singleton instance
_sailing_upsert_service: Optional[SailingUpsertService] = None


def get_sailing_upsert_service() -> SailingUpsertService:
    """Get or create SailingUpsertService instance."""
    global _sailing_upsert_service
    if _sailing_upsert_service is None:
        _sailing_upsert_service = SailingUpsertService()
    return _sailing_upsert_service
