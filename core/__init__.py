"""
Core utilities and configuration for the listing sync engine.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    timeutils: Naive-UTC timestamp helpers shared by models and sync code

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import RateLimited, TransientUpstreamError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "SyncEngineError",
    "UpstreamError",
    "TransientUpstreamError",
    "RateLimited",
    "AuthenticationError",
    "ResourceNotFoundError",
    "MediaError",
    "PermanentAssetError",
    "ExpiredMediaUrlError",
    "StorageError",
    "PersistenceError",
    "CheckpointError",
    "RetryableError",
    "NonRetryableError",
]
