"""
Custom exceptions for the migration pipeline with structured error context.

Every failure the pipeline can observe maps onto one of these classes, and
the class decides how far the failure is allowed to travel:

- record-level errors (parse, validation, transform, row write) are handled
  next to the record and end up in the error ledger;
- batch-level errors (``BatchFatalError``) block the offset commit and
  bubble up to the consumer worker;
- job-level errors (extraction, drain timeout) are absorbed by the
  sequencer, which moves on to the next job.

Exception Hierarchy:
    MigrationException (base)
    ├── ConfigurationError
    ├── ExtractionError
    │   └── SourceFetchError
    │       ├── SourceNetworkError (retryable)
    │       ├── SourceRateLimitError (retryable)
    │       ├── SourceAuthenticationError (non-retryable)
    │       └── SourceNotFoundError (non-retryable)
    ├── PublishError
    ├── RecordError
    │   ├── ParseError
    │   ├── ValidationError
    │   └── TransformationError
    ├── SinkError
    │   ├── RowWriteError
    │   └── SinkUnavailableError (retryable)
    ├── BatchFatalError
    ├── DrainTimeoutError
    ├── WorkerError
    ├── EncryptionError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class MigrationException(Exception):
    """
    Base exception for all migration-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job, table, key, etc.)
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
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Temporary database connection issues
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(MigrationException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Resource not found (HTTP 404)
    - Invalid configuration
    """
    pass


# ============================================================================
# Configuration
# ============================================================================

class ConfigurationError(NonRetryableError):
    """
    Raised when settings or the orchestrator config file are invalid.

    Context should include:
        - config_path: Path of the offending file (if any)
        - job_name: Job whose definition is invalid (if applicable)
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(MigrationException):
    """Base exception for source extraction failures."""
    pass


class SourceFetchError(ExtractionError):
    """
    Raised when a page cannot be fetched from the legacy source.

    Context should include:
        - api_url: The endpoint that failed
        - table: Source table identifier
        - offset: Page cursor
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of attempts made
    """
    pass


class SourceNetworkError(RetryableError, SourceFetchError):
    """Network/timeout/5xx errors that should be retried."""
    pass


class SourceRateLimitError(RetryableError, SourceFetchError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

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


class SourceAuthenticationError(NonRetryableError, SourceFetchError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class SourceNotFoundError(NonRetryableError, SourceFetchError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


class PublishError(MigrationException):
    """
    Raised when a chunk of messages cannot be delivered to the message log.

    Context should include:
        - topic: Target topic
        - chunk_size: Number of messages in the failed chunk
    """
    pass


# ============================================================================
# Record Errors
# ============================================================================

class RecordError(MigrationException):
    """Base exception for failures scoped to a single message."""
    pass


class ParseError(RecordError):
    """
    Raised when a message payload is not a JSON object.

    Context should include:
        - topic / partition / offset of the message
    """
    pass


class ValidationError(RecordError):
    """
    Raised when a record has no usable primary key.

    Context should include:
        - key_field: Name of the key field
        - key_value: Offending value
    """
    pass


class TransformationError(RecordError):
    """
    Raised when a required column ends up NULL after its transforms.

    Context should include:
        - column: Target column
        - source_field: Payload field it was derived from
    """
    pass


# ============================================================================
# Sink Errors
# ============================================================================

class SinkError(MigrationException):
    """Base exception for target sink failures."""
    pass


class RowWriteError(SinkError):
    """
    Raised when one upsert into one sink fails for one row.

    Context should include:
        - sink: Sink name
        - table: Fully-qualified target table
        - primary_key: Key of the row
    """
    pass


class SinkUnavailableError(RetryableError, SinkError):
    """Raised when a sink cannot be reached at all (connection-level failure)."""
    pass


class BatchFatalError(MigrationException):
    """
    Raised when a whole batch must be redelivered.

    Offsets of the batch are never committed once this is raised.

    Context should include:
        - job_name, topic, partition
        - first_offset / last_offset of the batch
        - unavailable_sinks: Sinks that failed for every row
    """
    pass


# ============================================================================
# Orchestration Errors
# ============================================================================

class DrainTimeoutError(MigrationException):
    """
    Raised when a consumer group does not drain within the wait ceiling.

    Context should include:
        - group_id
        - waited_seconds
        - last_lag / last_log_end
    """
    pass


class WorkerError(MigrationException):
    """Raised for background worker lifecycle failures."""
    pass


class EncryptionError(MigrationException):
    """Raised when a field cannot be encrypted."""
    pass
