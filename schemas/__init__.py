"""
Pydantic schemas shared by decoders, analyzer and executors.

Schemas:
    records: Decoded source records
    schema: Field definitions and the SchemaDescriptor
    memory: Memory governor state
    checkpoint: Resumable checkpoints
    operation: Rollback operations, points, plans and reports
    batch: Batch results, retry attempts, progress snapshots, run results

Usage:
    from schemas.records import Record
    from schemas.schema import SchemaDescriptor
    from schemas.batch import MigrationResult
"""

__all__ = [
    "Record",
    "FieldDefinition",
    "SchemaDescriptor",
    "MemoryState",
    "Checkpoint",
    "Operation",
    "RollbackReport",
    "BatchResult",
    "ProgressSnapshot",
    "MigrationResult",
]
