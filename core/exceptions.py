"""
Custom exceptions for the migration engine with structured error context.

Every exception carries a context dictionary so that failures can be logged
and stored on the migration run without losing the record or stage that
produced them.

Exception Hierarchy:
    MigrationException (base)
    ├── ExtractionError
    │   ├── SourceAPIError
    │   │   ├── AuthenticationError
    │   │   └── ResourceNotFoundError
    │   ├── NetworkError / RateLimitError / SourceServerError (retryable)
    │   └── FetchExhausted
    ├── TransformationError
    │   ├── RowTransformError
    │   └── FKUnresolved
    ├── LoadError
    │   ├── BatchWriteError
    │   ├── RowWriteError
    │   ├── StoreTransientError (retryable)
    │   └── StoreUnavailable
    ├── ConfigurationError
    └── RetryableError / NonRetryableError (mixins)

Only FetchExhausted, SourceAPIError and StoreUnavailable are fatal, and only
to the stage that raised them.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class MigrationException(Exception):
    """
    Base exception for all migration errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (entity type, external id, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(MigrationException):
    """
    Mixin for transient errors that the retry policy may repeat.

    Use this for:
    - Network timeouts and connection resets
    - Rate limiting (HTTP 429)
    - Source server errors (HTTP 500)
    - Lost or refused target-store connections
    """
    pass


class NonRetryableError(MigrationException):
    """
    Mixin for permanent errors that must not be retried.

    Use this for:
    - Authentication failures (HTTP 401, 403)
    - Unknown entity endpoints (HTTP 404)
    - Records that fail schema validation
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(MigrationException):
    """Base exception for source API failures."""
    pass


class SourceAPIError(ExtractionError):
    """
    Non-retryable source API failure, fatal for the current page fetch.

    Context should include:
        - entity_type: Entity endpoint that failed
        - status_code: HTTP status code (if applicable)
        - cursor: Cursor of the page being fetched
        - response_body: Response body (truncated)
    """
    pass


class AuthenticationError(NonRetryableError, SourceAPIError):
    """Authentication failures (HTTP 401, 403)."""
    pass


class ResourceNotFoundError(NonRetryableError, SourceAPIError):
    """Unknown entity endpoint (HTTP 404)."""
    pass


class NetworkError(RetryableError, ExtractionError):
    """Timeouts and transport failures talking to the source API."""
    pass


class SourceServerError(RetryableError, ExtractionError):
    """HTTP 500 from the source API."""
    pass


class RateLimitError(RetryableError, ExtractionError):
    """Rate limiting errors (HTTP 429)."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class FetchExhausted(ExtractionError):
    """
    Raised when a page fetch keeps failing after the retry budget is spent.

    Aborts the current entity-type stage.

    Context should include:
        - entity_type: Entity endpoint
        - cursor: Cursor of the failing page
        - attempts: Number of attempts made
    """
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(MigrationException):
    """Base exception for record transformation failures."""
    pass


class RowTransformError(NonRetryableError, TransformationError):
    """
    A single source record could not be parsed or transformed.

    The row is skipped and counted as failed; the stage continues.

    Context should include:
        - entity_type: Entity type of the record
        - external_id: External identifier (if it could be read)
        - field_errors: Validation errors by field
    """
    pass


class FKUnresolved(TransformationError):
    """
    A required foreign key has no entry in the identity map.

    Context should include:
        - entity_type: Entity type of the record
        - external_id: External identifier of the record
        - reference: Name of the unresolved reference
        - referenced_id: External identifier that was not found
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(MigrationException):
    """Base exception for target-store failures."""
    pass


class BatchWriteError(LoadError):
    """
    A chunk write was rejected by the target store.

    The writer falls back to writing that chunk one row at a time.

    Context should include:
        - table_name: Target table
        - batch_size: Number of rows in the chunk
        - constraint_name: Violated constraint (if available)
    """
    pass


class RowWriteError(LoadError):
    """A single row was rejected by the target store."""
    pass


class StoreTransientError(RetryableError, LoadError):
    """Connection-level target-store failure that may succeed on retry."""
    pass


class StoreUnavailable(LoadError):
    """
    The target store (or the identity map backing it) cannot be reached.

    Fatal for the current stage.
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(NonRetryableError):
    """Missing or invalid settings (API token, database URL, stage names)."""
    pass
