"""
SQLAlchemy ORM models for migration bookkeeping tables.

Models:
    base: Base declarative class, JSON column type and shared enums
        (SourceKind, RunStatus, OperationType, PressureLevel, RollbackMode)
    checkpoint: Checkpoint rows for resume-on-failure
    operation: Append-only rollback log entries

Database Schema:
    JSON payloads use JSONB on PostgreSQL and plain JSON elsewhere, so the
    same models back both production stores and SQLite-based tests.

Usage:
    from models.checkpoint import MigrationCheckpoint
    from models.operation import OperationLogEntry
    from models.base import RunStatus, OperationType
"""

__all__ = [
    "Base",
    "SourceKind",
    "RunStatus",
    "OperationType",
    "PressureLevel",
    "RollbackMode",
    "MigrationCheckpoint",
    "OperationLogEntry",
]
