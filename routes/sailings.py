"""
Sailing search API routes.

Read-only; available while a sync is running.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
import pydantic
import structlog

from exceptions import AppError, ValidationError
from models.sailing import CabinCategory, SailingDetail
from models.search import (
    FilterOptions,
    SailingSearchFilters,
    SailingSearchPage,
    SortDirection,
    SortField,
)
from services.sailing_search_service import get_sailing_search_service

logger = structlog.get_logger(__name__)

router = APIRouter()


def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


@router.get("", response_model=SailingSearchPage)
async def search_sailings(
    q: Optional[str] = Query(None, max_length=200, description="Ship, sailing, line or port name"),
    cruise_line_id: Optional[str] = Query(None),
    ship_id: Optional[str] = Query(None),
    region_id: Optional[str] = Query(None),
    embark_port_id: Optional[str] = Query(None),
    port_ids: list[str] = Query([], description="Sailings visiting every one of these ports"),
    sail_date_from: Optional[date] = Query(None),
    sail_date_to: Optional[date] = Query(None),
    nights_min: Optional[int] = Query(None, ge=0),
    nights_max: Optional[int] = Query(None, ge=0),
    price_min_cents: Optional[int] = Query(None, ge=0),
    price_max_cents: Optional[int] = Query(None, ge=0),
    cabin_category: Optional[CabinCategory] = Query(None, description="Price filter and sort category"),
    include_past: bool = Query(False, description="Include sailings that already departed"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: Optional[int] = Query(None, ge=1, description="Items per page"),
    sort_by: SortField = Query(SortField.SAIL_DATE),
    sort_dir: SortDirection = Query(SortDirection.ASC),
):
    """
    Search sailings.

    Filters combine with AND. The sync block reports whether prices are
    being refreshed right now.
    """
    try:
        try:
            filters = SailingSearchFilters(
                q=q,
                cruise_line_id=cruise_line_id,
                ship_id=ship_id,
                region_id=region_id,
                embark_port_id=embark_port_id,
                port_ids=port_ids,
                sail_date_from=sail_date_from,
                sail_date_to=sail_date_to,
                nights_min=nights_min,
                nights_max=nights_max,
                price_min_cents=price_min_cents,
                price_max_cents=price_max_cents,
                cabin_category=cabin_category,
                include_past=include_past,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid search filters",
                code="INVALID_SEARCH_FILTERS",
                details={"errors": [err["msg"] for err in e.errors()]}
            )

        return get_sailing_search_service().search(
            filters=filters,
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_dir=sort_dir,
        )

    except Exception as e:
        return handle_error(e)


@router.get("/filters", response_model=FilterOptions)
async def filter_options():
    """Lines, ships, regions, embark ports and ranges for the search form."""
    try:
        return get_sailing_search_service().get_filter_options()
    except Exception as e:
        return handle_error(e)


@router.get("/{sailing_id}", response_model=SailingDetail)
async def get_sailing(sailing_id: str):
    """
    Sailing detail with itinerary, regions and cabin prices.

    Raises:
        404: Sailing not found
    """
    try:
        return get_sailing_search_service().get_sailing(sailing_id)
    except Exception as e:
        return handle_error(e)
