"""
Pydantic models for validation and serialization.

Feed models coerce provider JSON; the rest are storage and API shapes.
"""

from models.base import BaseSchema, TimestampMixin, Pagination
from models.catalog import (
    EntityType,
    CanonicalEntity,
    ResolvedRefs,
    ReferenceCacheStats,
    CacheClearResult,
    placeholder_name,
    is_placeholder_name,
)
from models.sailing import (
    CabinCategory,
    CabinPrices,
    SailingUpsertResult,
    SailingDetail,
)
from models.feed import (
    FieldError,
    FeedCruise,
    ValidatedSailing,
    ValidationResult,
)
from models.sync import (
    SyncStatus,
    SyncErrorType,
    SyncOptions,
    SyncMetrics,
    SyncErrorEntry,
    SyncRunResponse,
    SyncStatusResponse,
    SyncHistoryResponse,
    SyncState,
    ConnectionTestResult,
)
from models.coverage import (
    EntityCoverage,
    CoverageStats,
    StubsReport,
    CleanupPreview,
    CleanupResult,
    PurgeResult,
    RawStorageStats,
)
from models.search import (
    SortField,
    SortDirection,
    SailingSearchFilters,
    SailingSearchItem,
    SailingSearchPage,
    FilterOptions,
)

__all__ = [
    # Base
    "BaseSchema",
    "TimestampMixin",
    "Pagination",
    # Catalog
    "EntityType",
    "CanonicalEntity",
    "ResolvedRefs",
    "ReferenceCacheStats",
    "CacheClearResult",
    "placeholder_name",
    "is_placeholder_name",
    # Sailings
    "CabinCategory",
    "CabinPrices",
    "SailingUpsertResult",
    "SailingDetail",
    # Feed
    "FieldError",
    "FeedCruise",
    "ValidatedSailing",
    "ValidationResult",
    # Sync
    "SyncStatus",
    "SyncErrorType",
    "SyncOptions",
    "SyncMetrics",
    "SyncErrorEntry",
    "SyncRunResponse",
    "SyncStatusResponse",
    "SyncHistoryResponse",
    "SyncState",
    "ConnectionTestResult",
    # Coverage
    "EntityCoverage",
    "CoverageStats",
    "StubsReport",
    "CleanupPreview",
    "CleanupResult",
    "PurgeResult",
    "RawStorageStats",
    # Search
    "SortField",
    "SortDirection",
    "SailingSearchFilters",
    "SailingSearchItem",
    "SailingSearchPage",
    "FilterOptions",
]
