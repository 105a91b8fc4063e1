"""
Database connection management.

Provides Supabase client singleton for catalog and sync-run operations.
"""

from supabase import create_client, Client
from functools import lru_cache
from typing import Optional
import structlog

from config.settings import settings

logger = structlog.get_logger(__name__)


class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class ConnectionError(DatabaseError):
    """Failed to connect to database."""
    pass


@lru_cache()
def get_supabase_client() -> Client:
    """
    Get cached Supabase client instance.

    Uses the service role key when configured: sync writes and credential
    decryption need it, and the API only reads catalog tables.
    Call get_supabase_client.cache_clear() to reconnect.

    Returns:
        Client: Supabase client

    Raises:
        ConnectionError: If connection fails
    """
    try:
        logger.info(
            "connecting_to_supabase",
            url=settings.supabase_url[:30] + "...",  # Log partial URL only
            service_role=bool(settings.supabase_service_key)
        )

        client = create_client(
            settings.supabase_url,
            settings.supabase_service_key or settings.supabase_key
        )

        # Test connection with simple query
        client.table("cruise_sync_runs").select("id").limit(1).execute()

        logger.info(
            "supabase_connected",
            status="success"
        )

        return client

    except Exception as e:
        logger.error(
            "supabase_connection_failed",
            error=str(e),
            error_type=type(e).__name__
        )
        raise ConnectionError(f"Failed to connect to Supabase: {e}") from e


# Convenience alias
db = get_supabase_client


# ===================
# HELPER FUNCTIONS
# ===================

def check_connection() -> dict:
    """
    Check database connection health.

    Returns:
        dict: Connection status with details
    """
    try:
        client = get_supabase_client()

        sailings = client.table("cruise_sailings").select("id", count="exact").limit(1).execute()
        runs = client.table("cruise_sync_runs").select("id", count="exact").limit(1).execute()

        return {
            "status": "healthy",
            "sailings_count": sailings.count,
            "sync_runs_count": runs.count
        }

    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e)
        }


def reset_connection():
    """
    Reset the cached database connection.

    Call this if connection becomes stale or after config changes.
    """
    get_supabase_client.cache_clear()
    logger.info("database_connection_reset")


def fetch_all(query_factory, page_size: int = 1000) -> list[dict]:
    """
    Read every row of a query, page by page.

    PostgREST caps each response (1000 rows by default), so reports that
    aggregate whole tables walk the result with range().

    Args:
        query_factory: Zero-arg callable returning a fresh filtered query
        page_size: Rows per request

    Returns:
        All rows, in the order the query defines
    """
    rows: list[dict] = []
    offset = 0
    while True:
        result = query_factory().range(offset, offset + page_size - 1).execute()
        batch = result.data or []
        rows.extend(batch)
        if len(batch) < page_size:
            return rows
        offset += page_size
