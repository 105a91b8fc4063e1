"""
Business logic services.

Each service handles one part of the cruise catalog sync or its read side.
"""

from services.feed_validator import validate
from services.entity_resolver import EntityResolver, get_entity_resolver, parse_entity_type
from services.sailing_upsert_service import SailingUpsertService, get_sailing_upsert_service
from services.sync_run_service import ActiveSyncRun, SyncRunService, get_sync_run_service
from services.credential_service import CredentialService, get_credential_service
from services.feed_source import FeedFile, FeedSource, LocalFeedSource, HttpFeedSource, build_feed_source
from services.feed_file_service import FeedFileService, get_feed_file_service
from services.raw_archive_service import RawArchiveService, get_raw_archive_service
from services.cruise_sync_service import CruiseSyncService, get_cruise_sync_service
from services.coverage_service import CoverageService, get_coverage_service
from services.sailing_search_service import SailingSearchService, get_sailing_search_service

__all__ = [
    "validate",
    "EntityResolver",
    "get_entity_resolver",
    "parse_entity_type",
    "SailingUpsertService",
    "get_sailing_upsert_service",
    "ActiveSyncRun",
    "SyncRunService",
    "get_sync_run_service",
    "CredentialService",
    "get_credential_service",
    "FeedFile",
    "FeedSource",
    "LocalFeedSource",
    "HttpFeedSource",
    "build_feed_source",
    "FeedFileService",
    "get_feed_file_service",
    "RawArchiveService",
    "get_raw_archive_service",
    "CruiseSyncService",
    "get_cruise_sync_service",
    "CoverageService",
    "get_coverage_service",
    "SailingSearchService",
    "get_sailing_search_service",
]
