"""
API route modules.

Each module defines routes for one area.
"""

from routes.cruise_sync import router as cruise_sync_router
from routes.sailings import router as sailings_router

__all__ = [
    "cruise_sync_router",
    "sailings_router",
]
