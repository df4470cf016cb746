from sqlalchemy import Column, Integer, String, DateTime, Enum, Index
from models.base import Base, JSONType, OperationType


class OperationLogEntry(Base):
    """
    Append-only rollback log entry.

    Rows are never updated; a reverted operation is superseded by a new row
    whose inverse_of points at it.
    """
    __tablename__ = "migration_operations"

    id = Column(Integer, primary_key=True, autoincrement=True)

    operation_id = Column(String(64), nullable=False, unique=True)
    run_id = Column(String(100), nullable=False, index=True)
    worker_id = Column(Integer, nullable=False, default=0)
    sequence = Column(Integer, nullable=False)

    type = Column(Enum(OperationType), nullable=False)
    target = Column(String(255), nullable=False)
    key = Column(JSONType, nullable=True)
    before_image = Column(JSONType, nullable=True)
    after_image = Column(JSONType, nullable=True)
    inverse_of = Column(String(64), nullable=True, index=True)

    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_operation_run_order", "run_id", "worker_id", "sequence"),
    )
