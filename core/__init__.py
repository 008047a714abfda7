"""
Core utilities and configuration for the questionnaire migration engine.

This package provides foundational components used throughout the migration:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_maker
    from core.exceptions import FetchExhausted, StoreUnavailable
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "create_engine",
    "create_session_maker",
    "setup_logging",
    # Exceptions
    "MigrationException",
    "ExtractionError",
    "SourceAPIError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "NetworkError",
    "SourceServerError",
    "RateLimitError",
    "FetchExhausted",
    "TransformationError",
    "RowTransformError",
    "FKUnresolved",
    "LoadError",
    "BatchWriteError",
    "RowWriteError",
    "StoreTransientError",
    "StoreUnavailable",
    "ConfigurationError",
    "RetryableError",
    "NonRetryableError",
]
