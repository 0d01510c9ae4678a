"""
Core utilities and configuration for the bridge migration pipeline.

Modules:
    config: Application configuration and environment variable management
    database: Async database handles (error ledger, target sinks)
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    encryption: Field-level AES-GCM encryption

Usage:
    from core.config import settings
    from core.database import Database
    from core.exceptions import BatchFatalError, SourceNetworkError
    from core.logging import setup_logging

Example:
    setup_logging()

    ledger_db = Database("ledger", settings.LEDGER_DATABASE_URL)
    async with ledger_db.session() as session:
        ...
    await ledger_db.dispose()
"""

__all__ = [
    "settings",
    "Database",
    "DatabaseRegistry",
    "setup_logging",
    "FieldCipher",
    # Exceptions
    "MigrationException",
    "ConfigurationError",
    "ExtractionError",
    "SourceFetchError",
    "SourceNetworkError",
    "SourceRateLimitError",
    "SourceAuthenticationError",
    "SourceNotFoundError",
    "PublishError",
    "RecordError",
    "ParseError",
    "ValidationError",
    "TransformationError",
    "SinkError",
    "RowWriteError",
    "SinkUnavailableError",
    "BatchFatalError",
    "DrainTimeoutError",
    "WorkerError",
    "EncryptionError",
    "RetryableError",
    "NonRetryableError",
]
