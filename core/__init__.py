"""
Core utilities and configuration for the order sync service.

This package provides foundational components used throughout the service:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factory
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import get_session_factory
    from core.exceptions import NetworkError, SyncAlreadyRunningError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with get_session_factory()() as session:
        # Perform database operations
        pass
"""

from core.config import settings, Settings
from core.logging import setup_logging

__all__ = [
    "settings",
    "Settings",
    "setup_logging",
]
