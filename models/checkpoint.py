from sqlalchemy import Column, Integer, String, DateTime, Index, BigInteger
from datetime import datetime, timezone
from models.base import Base, JSONType


class MigrationCheckpoint(Base):
    """
    Durable snapshot of migration progress.

    Purpose:
    - Resume a run from its last committed position
    - Keep a bounded window of recent snapshots per run

    Design:
    - One row per saved checkpoint, keyed by (run_id, checkpoint_id)
    - sequence orders checkpoints within a run
    - memory_snapshot and state hold the JSON payloads
    """
    __tablename__ = "migration_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Identification
    run_id = Column(String(100), nullable=False, index=True)
    checkpoint_id = Column(String(150), nullable=False)
    sequence = Column(Integer, nullable=False)

    # Progress
    cursor = Column(BigInteger, nullable=False, default=0)
    success_count = Column(BigInteger, nullable=False, default=0)
    failure_count = Column(BigInteger, nullable=False, default=0)
    current_batch_index = Column(Integer, nullable=False, default=0)
    total_batches = Column(Integer, nullable=True)

    # Payloads
    memory_snapshot = Column(JSONType, nullable=True)
    state = Column(JSONType, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    # Constraints
    __table_args__ = (
        Index("idx_checkpoint_run_checkpoint", "run_id", "checkpoint_id", unique=True),
        Index("idx_checkpoint_run_sequence", "run_id", "sequence"),
    )
