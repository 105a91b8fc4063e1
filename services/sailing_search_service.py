"""
Sailing search service.

Filtered, sorted, paginated reads over the cruise_sailing_search view.
Never blocks on or fails because of a running sync.
"""

from datetime import date
from typing import Optional

import structlog
from postgrest.exceptions import APIError

from config import fetch_all, get_supabase_client, settings
from exceptions import DatabaseError, SailingNotFoundError
from models.base import Pagination
from models.sailing import (
    CHEAPEST_PRICE_COLUMN,
    CabinCategory,
    CabinPricePointResponse,
    CabinPrices,
    SailingDetail,
    SailingRegionResponse,
    StopResponse,
)
from models.search import (
    FilterOption,
    FilterOptions,
    SailingSearchFilters,
    SailingSearchItem,
    SailingSearchPage,
    SearchSyncInfo,
    SortDirection,
    SortField,
)
from models.sync import SyncState
from services.sync_run_service import SyncRunService, get_sync_run_service

logger = structlog.get_logger(__name__)

SEARCH_VIEW = "cruise_sailing_search"
INVALID_TEXT_REPRESENTATION = "22P02"

SORT_COLUMNS = {
    SortField.SAIL_DATE: "sail_date",
    SortField.NIGHTS: "nights",
    SortField.SHIP_NAME: "ship_name",
    SortField.LINE_NAME: "cruise_line_name",
}

# q matches any of these; port_names lists every port the itinerary calls at
TEXT_SEARCH_COLUMNS = ("name", "ship_name", "cruise_line_name", "embark_port_name", "port_names")

# PostgREST or() syntax characters
_OR_RESERVED = str.maketrans({c: " " for c in ",()*%\\"})


def price_column(category: Optional[CabinCategory]) -> str:
    """Price column for a cabin category, the overall cheapest when absent."""
    return category.price_column if category else CHEAPEST_PRICE_COLUMN


def _prices(row: dict) -> CabinPrices:
    return CabinPrices(**{
        f"{category.value}_cents": row.get(category.price_column)
        for category in CabinCategory
    })


class SailingSearchService:
    """Read-only sailing queries."""

    def __init__(self, tracker: Optional[SyncRunService] = None):
        self.db = get_supabase_client()
        self.provider = settings.feed_provider
        self.tracker = tracker or get_sync_run_service()

    def _sync_state(self) -> SyncState:
        """Current sync state; any failure reads as 'not syncing'."""
        try:
            return self.tracker.get_sync_state()
        except Exception as e:
            logger.warning("search_sync_state_unavailable", error=str(e))
            return SyncState()

    def _apply_filters(self, query, filters: SailingSearchFilters):
        if filters.q and filters.q.strip():
            term = " ".join(filters.q.translate(_OR_RESERVED).split())
            if term:
                query = query.or_(",".join(
                    f"{column}.ilike.%{term}%"
                    for column in TEXT_SEARCH_COLUMNS
                ))
        if filters.cruise_line_id:
            query = query.eq("cruise_line_id", filters.cruise_line_id)
        if filters.ship_id:
            query = query.eq("ship_id", filters.ship_id)
        if filters.embark_port_id:
            query = query.eq("embark_port_id", filters.embark_port_id)
        if filters.region_id:
            query = query.contains("region_ids", [filters.region_id])
        if filters.port_ids:
            query = query.contains("port_ids", list(filters.port_ids))

        if filters.sail_date_from:
            query = query.gte("sail_date", filters.sail_date_from.isoformat())
        if filters.sail_date_to:
            query = query.lte("sail_date", filters.sail_date_to.isoformat())
        if not filters.include_past:
            query = query.gte("sail_date", date.today().isoformat())

        if filters.nights_min is not None:
            query = query.gte("nights", filters.nights_min)
        if filters.nights_max is not None:
            query = query.lte("nights", filters.nights_max)

        # Range comparisons also drop rows without a price in the column
        column = price_column(filters.cabin_category)
        if filters.price_min_cents is not None:
            query = query.gte(column, filters.price_min_cents)
        if filters.price_max_cents is not None:
            query = query.lte(column, filters.price_max_cents)

        return query

    def search(
        self,
        filters: Optional[SailingSearchFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        sort_by: SortField = SortField.SAIL_DATE,
        sort_dir: SortDirection = SortDirection.ASC,
    ) -> SailingSearchPage:
        """
        Search active sailings.

        Args:
            filters: Conjunctive filters
            page: Page number (1-indexed)
            page_size: Items per page, capped at search_max_page_size
            sort_by: Sort field; price uses the filtered cabin category
            sort_dir: asc or desc; ties break on id ascending, null prices last

        Returns:
            SailingSearchPage with items, pagination and sync block

        Raises:
            DatabaseError: If the query fails
        """
        filters = filters or SailingSearchFilters()
        page = max(page, 1)
        page_size = min(page_size or settings.search_default_page_size, settings.search_max_page_size)
        page_size = max(page_size, 1)

        if sort_by == SortField.PRICE:
            sort_column = price_column(filters.cabin_category)
        else:
            sort_column = SORT_COLUMNS[sort_by]

        logger.info(
            "searching_sailings",
            page=page,
            page_size=page_size,
            sort_by=sort_by.value,
            sort_dir=sort_dir.value,
            filters=filters.model_dump(exclude_defaults=True, mode="json")
        )

        try:
            query = (
                self.db.table(SEARCH_VIEW)
                .select("*", count="exact")
                .eq("provider", self.provider)
                .eq("is_active", True)
            )
            query = self._apply_filters(query, filters)

            offset = (page - 1) * page_size
            result = (
                query
                .order(sort_column, desc=sort_dir == SortDirection.DESC, nullsfirst=False)
                .order("id")
                .range(offset, offset + page_size - 1)
                .execute()
            )
        except APIError as e:
            logger.error("sailing_search_failed", code=e.code, error=e.message)
            raise DatabaseError("select", e.message or str(e))
        except Exception as e:
            logger.error("sailing_search_failed", error=str(e))
            raise DatabaseError("select", str(e))

        state = self._sync_state()
        items = [self._to_item(row, state) for row in result.data or []]
        total = result.count or 0

        logger.info("sailings_searched", count=len(items), total=total, sync_in_progress=state.in_progress)

        return SailingSearchPage(
            items=items,
            pagination=Pagination.create(total, page, page_size),
            sync=SearchSyncInfo(
                sync_in_progress=state.in_progress,
                last_synced_at=state.last_synced_at,
            ),
            sort_by=sort_by,
            sort_dir=sort_dir,
        )

    def _to_item(self, row: dict, state: SyncState) -> SailingSearchItem:
        item = SailingSearchItem(
            id=row["id"],
            external_id=row["provider_identifier"],
            name=row["name"],
            voyage_code=row.get("voyage_code"),
            cruise_line_id=row["cruise_line_id"],
            cruise_line_name=row.get("cruise_line_name"),
            cruise_line_logo_url=row.get("cruise_line_logo_url"),
            ship_id=row["ship_id"],
            ship_name=row.get("ship_name"),
            ship_image_url=row.get("ship_image_url"),
            embark_port_id=row.get("embark_port_id"),
            embark_port_name=row.get("embark_port_name"),
            disembark_port_name=row.get("disembark_port_name"),
            sail_date=row["sail_date"],
            end_date=row["end_date"],
            nights=row["nights"],
            sea_days=row.get("sea_days") or 0,
            prices=_prices(row),
            cheapest_price_cents=row.get(CHEAPEST_PRICE_COLUMN),
            last_synced_at=row.get("last_synced_at"),
        )
        if state.in_progress and state.started_at is not None:
            item.prices_updating = (
                item.last_synced_at is None or item.last_synced_at < state.started_at
            )
        return item

    def get_sailing(self, sailing_id: str) -> SailingDetail:
        """
        One sailing with itinerary, regions and cabin price points.

        Raises:
            SailingNotFoundError: Unknown sailing id
        """
        try:
            result = (
                self.db.table(SEARCH_VIEW)
                .select("*")
                .eq("id", sailing_id)
                .limit(1)
                .execute()
            )
        except APIError as e:
            if e.code == INVALID_TEXT_REPRESENTATION:
                raise SailingNotFoundError(sailing_id)
            raise DatabaseError("select", e.message or str(e))

        if not result.data:
            raise SailingNotFoundError(sailing_id)
        row = result.data[0]

        stops = (
            self.db.table("cruise_sailing_stops")
            .select("*")
            .eq("sailing_id", sailing_id)
            .order("day_number")
            .order("sequence_order")
            .execute()
        ).data or []

        region_rows = (
            self.db.table("cruise_sailing_regions")
            .select("region_id, is_primary")
            .eq("sailing_id", sailing_id)
            .execute()
        ).data or []
        region_names = {}
        if region_rows:
            names = (
                self.db.table("cruise_regions")
                .select("id, name")
                .in_("id", [r["region_id"] for r in region_rows])
                .execute()
            ).data or []
            region_names = {r["id"]: r["name"] for r in names}
        region_rows.sort(key=lambda r: (not r.get("is_primary"), region_names.get(r["region_id"]) or ""))

        price_rows = (
            self.db.table("cruise_sailing_cabin_prices")
            .select("*")
            .eq("sailing_id", sailing_id)
            .order("price_cents")
            .order("cabin_code")
            .execute()
        ).data or []

        return SailingDetail(
            id=row["id"],
            external_id=row["provider_identifier"],
            name=row["name"],
            voyage_code=row.get("voyage_code"),
            cruise_line_id=row["cruise_line_id"],
            cruise_line_name=row.get("cruise_line_name"),
            ship_id=row["ship_id"],
            ship_name=row.get("ship_name"),
            ship_image_url=row.get("ship_image_url"),
            embark_port_id=row.get("embark_port_id"),
            embark_port_name=row.get("embark_port_name"),
            disembark_port_id=row.get("disembark_port_id"),
            disembark_port_name=row.get("disembark_port_name"),
            sail_date=row["sail_date"],
            end_date=row["end_date"],
            nights=row["nights"],
            sea_days=row.get("sea_days") or 0,
            prices=_prices(row),
            cheapest_price_cents=row.get(CHEAPEST_PRICE_COLUMN),
            no_fly=bool(row.get("no_fly")),
            depart_uk=bool(row.get("depart_uk")),
            is_active=row.get("is_active", True),
            last_synced_at=row.get("last_synced_at"),
            itinerary=[StopResponse(**stop) for stop in stops],
            regions=[
                SailingRegionResponse(
                    region_id=r["region_id"],
                    name=region_names.get(r["region_id"]),
                    is_primary=bool(r.get("is_primary")),
                )
                for r in region_rows
            ],
            cabin_prices=[CabinPricePointResponse(**p) for p in price_rows],
        )

    def get_filter_options(self) -> FilterOptions:
        """
        Values for the search UI, drawn from upcoming active sailings.

        Raises:
            DatabaseError: If a read fails
        """
        try:
            rows = fetch_all(
                lambda: self.db.table(SEARCH_VIEW)
                .select(
                    "id, cruise_line_id, cruise_line_name, ship_id, ship_name, "
                    "embark_port_id, embark_port_name, region_ids, sail_date, nights, "
                    + CHEAPEST_PRICE_COLUMN
                )
                .eq("provider", self.provider)
                .eq("is_active", True)
                .gte("sail_date", date.today().isoformat())
                .order("id")
            )
            regions = fetch_all(
                lambda: self.db.table("cruise_regions")
                .select("id, name")
                .eq("provider", self.provider)
                .order("id")
            )
        except Exception as e:
            logger.error("filter_options_failed", error=str(e))
            raise DatabaseError("select", str(e))

        def options(id_key: str, name_key: str) -> list[FilterOption]:
            seen = {}
            for row in rows:
                if row.get(id_key) and row[id_key] not in seen:
                    seen[row[id_key]] = row.get(name_key) or ""
            return sorted(
                (FilterOption(id=k, name=v) for k, v in seen.items()),
                key=lambda o: o.name.lower()
            )

        used_regions = {rid for row in rows for rid in row.get("region_ids") or []}
        dates = [row["sail_date"] for row in rows]
        nights = [row["nights"] for row in rows if row.get("nights") is not None]
        prices = [row[CHEAPEST_PRICE_COLUMN] for row in rows if row.get(CHEAPEST_PRICE_COLUMN) is not None]

        return FilterOptions(
            cruise_lines=options("cruise_line_id", "cruise_line_name"),
            ships=options("ship_id", "ship_name"),
            regions=sorted(
                (FilterOption(id=r["id"], name=r["name"]) for r in regions if r["id"] in used_regions),
                key=lambda o: o.name.lower()
            ),
            embark_ports=options("embark_port_id", "embark_port_name"),
            sail_date_min=min(dates) if dates else None,
            sail_date_max=max(dates) if dates else None,
            nights_min=min(nights) if nights else None,
            nights_max=max(nights) if nights else None,
            price_min_cents=min(prices) if prices else None,
            price_max_cents=max(prices) if prices else None,
        )


# Singleton instance
_sailing_search_service: Optional[SailingSearchService] = None


def get_sailing_search_service() -> SailingSearchService:
    """Get or create SailingSearchService instance."""
    global _sailing_search_service
    if _sailing_search_service is None:
        _sailing_search_service = SailingSearchService()
    return _sailing_search_service
