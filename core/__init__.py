"""
Core utilities and configuration for the migration engine.

This package provides foundational components used by every migration module:

Modules:
    config: Settings loaded from environment variables and .env
    database: Async engine and session management for SQL-backed stores
    exceptions: Custom exception hierarchy with structured error context
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import get_session_maker, init_models
    from core.exceptions import MigrationAborted, ClassifiedFatal
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Create the checkpoint and operation log tables
    await init_models()
"""

__all__ = [
    "settings",
    "get_session_maker",
    "init_models",
    "setup_logging",
    # Exceptions
    "MigrationError",
    "SourceUnreadable",
    "DecodeError",
    "AnalysisError",
    "ClassifiedRecoverable",
    "ClassifiedFatal",
    "CheckpointNotFound",
    "CheckpointCorrupt",
    "CheckpointMismatch",
    "RollbackUnsafe",
    "FailureThresholdExceeded",
    "MigrationAborted",
    "RetryableError",
    "NonRetryableError",
]
