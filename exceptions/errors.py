"""
Custom exception classes for the application.

Record-level feed errors carry an error_type that is stored on the sync
error row. Run-fatal errors end the whole sync run as failed.
"""

from typing import Optional, Any
from datetime import datetime


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "SAILING_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ConflictError(AppError):
    """Conflict with existing resource (409)."""

    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""

    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="DATABASE_ERROR",
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# CATALOG ERRORS
# ===================

class SailingNotFoundError(NotFoundError):
    """Sailing not found."""

    def __init__(self, sailing_id: str):
        super().__init__(
            resource="Sailing",
            identifier=sailing_id,
            code="SAILING_NOT_FOUND"
        )


class EntityNotFoundError(NotFoundError):
    """Canonical cruise line / ship / port / region not found."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            resource=entity_type.replace("_", " ").capitalize(),
            identifier=entity_id,
            code="ENTITY_NOT_FOUND"
        )


class InvalidEntityTypeError(ValidationError):
    """Unknown canonical entity type."""

    def __init__(self, entity_type: str, valid: list[str]):
        super().__init__(
            code="INVALID_ENTITY_TYPE",
            message=f"Unknown entity type: {entity_type}",
            details={"provided": entity_type, "valid": valid}
        )


# ===================
# SYNC RUN ERRORS
# ===================

class SyncRunNotFoundError(NotFoundError):
    """Sync run not found."""

    def __init__(self, run_id: str):
        super().__init__(
            resource="Sync run",
            identifier=run_id,
            code="SYNC_RUN_NOT_FOUND"
        )


class SyncAlreadyRunningError(ConflictError):
    """A second run was started while one is still running."""

    def __init__(self, running_id: Optional[str] = None):
        super().__init__(
            code="SYNC_ALREADY_RUNNING",
            message="A cruise sync is already running",
            details={"running_run_id": running_id}
        )


class NoActiveSyncError(ConflictError):
    """Cancel requested with no run in progress."""

    def __init__(self):
        super().__init__(
            code="NO_ACTIVE_SYNC",
            message="No cruise sync is running"
        )


class InvalidStatusTransitionError(ValidationError):
    """Invalid sync run status transition."""

    def __init__(self, current_status: str, new_status: str):
        super().__init__(
            code="INVALID_STATUS_TRANSITION",
            message=f"Cannot transition from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "new_status": new_status,
                "reason": "Only running sync runs can be finalized, and only once"
            }
        )


# ===================
# RECORD-LEVEL FEED ERRORS
# ===================

class FeedRecordError(AppError):
    """
    One feed file or record could not be ingested.

    Captured by the sync loop as a sync error; the run continues.
    """

    error_type = "unknown"

    def __init__(
        self,
        message: str,
        sailing_external_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.sailing_external_id = sailing_external_id
        super().__init__(
            code=f"FEED_{self.error_type.upper()}",
            message=message,
            status_code=422,
            details={"sailing_external_id": sailing_external_id, **(details or {})}
        )


class FeedParseError(FeedRecordError):
    """File is not a JSON object."""
    error_type = "parse_error"


class FeedDownloadError(FeedRecordError):
    """A single feed file could not be fetched."""
    error_type = "download_failed"


class OversizedFeedFileError(FeedRecordError):
    """Feed file exceeds the configured size limit."""
    error_type = "oversized"


class FeedValidationError(FeedRecordError):
    """Record is missing identity fields or is structurally invalid."""
    error_type = "validation_error"


class ReferenceResolutionError(FeedRecordError):
    """A referenced entity cannot be resolved even as a stub."""
    error_type = "reference_error"


class SailingUpsertError(FeedRecordError):
    """Storage rejected the sailing (constraint, FK, bad value)."""
    error_type = "upsert_error"


class UnexpectedRecordError(FeedRecordError):
    """Any other failure while ingesting one file."""
    error_type = "unexpected_error"


# ===================
# RUN-FATAL ERRORS
# ===================

class SyncFatalError(AppError):
    """
    Fault that makes continuing the run impossible.

    The run is finalized as failed with this message.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=503,
            details=details
        )


class FeedUnavailableError(SyncFatalError):
    """Feed source unreachable or listing failed."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(code="FEED_UNAVAILABLE", message=message, details=details)


class CredentialError(SyncFatalError):
    """Provider credentials missing or could not be decrypted."""

    def __init__(self, provider: str, message: str):
        super().__init__(
            code="CREDENTIALS_UNAVAILABLE",
            message=message,
            details={"provider": provider}
        )


class StorageUnavailableError(SyncFatalError):
    """Database unreachable (transport failure, not a constraint error)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(code="STORAGE_UNAVAILABLE", message=message, details=details)


class TelegramError(AppError):
    """Telegram API error."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="TELEGRAM_ERROR",
            message=message,
            status_code=500,
            details=details
        )
