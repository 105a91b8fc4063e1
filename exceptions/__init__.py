"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ConflictError,
    DatabaseError,

    # Catalog
    SailingNotFoundError,
    EntityNotFoundError,
    InvalidEntityTypeError,

    # Sync runs
    SyncRunNotFoundError,
    SyncAlreadyRunningError,
    NoActiveSyncError,
    InvalidStatusTransitionError,

    # Record-level feed errors
    FeedRecordError,
    FeedParseError,
    FeedDownloadError,
    OversizedFeedFileError,
    FeedValidationError,
    ReferenceResolutionError,
    SailingUpsertError,
    UnexpectedRecordError,

    # Run-fatal errors
    SyncFatalError,
    FeedUnavailableError,
    CredentialError,
    StorageUnavailableError,

    # Integrations
    TelegramError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "DatabaseError",

    # Catalog
    "SailingNotFoundError",
    "EntityNotFoundError",
    "InvalidEntityTypeError",

    # Sync runs
    "SyncRunNotFoundError",
    "SyncAlreadyRunningError",
    "NoActiveSyncError",
    "InvalidStatusTransitionError",

    # Record-level feed errors
    "FeedRecordError",
    "FeedParseError",
    "FeedDownloadError",
    "OversizedFeedFileError",
    "FeedValidationError",
    "ReferenceResolutionError",
    "SailingUpsertError",
    "UnexpectedRecordError",

    # Run-fatal errors
    "SyncFatalError",
    "FeedUnavailableError",
    "CredentialError",
    "StorageUnavailableError",

    # Integrations
    "TelegramError",
]
