"""
Pydantic schemas for batch execution, retry and progress reporting
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from models.base import RunStatus


class BatchResult(BaseModel):
    """Metrics for one processed batch"""

    batch_id: int = Field(..., ge=0)
    record_count: int = Field(..., ge=0)
    success_count: int = Field(0, ge=0)
    failure_count: int = Field(0, ge=0)
    duration: float = Field(0.0, ge=0)
    worker_id: int = 0
    throughput: float = Field(0.0, ge=0, description="Records per second")
    entity: str = "default"
    start_position: int = 0
    timed_out: bool = False

    @classmethod
    def build(cls, batch_id: int, record_count: int, success_count: int, failure_count: int,
              duration: float, worker_id: int = 0, **extra) -> "BatchResult":
        throughput = record_count / duration if duration > 0 else 0.0
        return cls(
            batch_id=batch_id,
            record_count=record_count,
            success_count=success_count,
            failure_count=failure_count,
            duration=duration,
            worker_id=worker_id,
            throughput=round(throughput, 2),
            **extra
        )


class RecordFailure(BaseModel):
    """A record that could not be processed"""

    position: int
    category: str
    error_type: str
    error_message: str
    attempts: int = 1
    provenance: Dict[str, Any] = Field(default_factory=dict)


class MigrationResult(BaseModel):
    """Final (or abort-time) outcome of a run"""

    run_id: str
    status: RunStatus
    processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    batches: int = 0
    cursor: int = 0
    last_checkpoint_id: Optional[str] = None
    resumed_from: Optional[str] = None
    failures: List[RecordFailure] = Field(default_factory=list)
    duration: float = 0.0

    class Config:
        use_enum_values = True


class RetryAttempt(BaseModel):
    """One failed attempt observed by the retry controller"""

    attempt: int
    category: str
    recoverable: bool
    delay: Optional[float] = None
    error_type: str
    error_message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ItemFailure(BaseModel):
    """Failure detail for partial-failure processing"""

    index: int
    category: str
    error_type: str
    error_message: str
    attempts: int = 1


class PartialFailureReport(BaseModel):
    """Aggregate outcome of process_with_partial_failures"""

    total_items: int
    processed: int = 0
    successful: List[Any] = Field(default_factory=list)
    failed: List[ItemFailure] = Field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None
    success_rate: float = 0.0
    failure_rate: float = 0.0

    @property
    def success_count(self) -> int:
        return len(self.successful)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


class EntityProgress(BaseModel):
    """Progress of one entity (table, file, element type)"""

    name: str
    total: Optional[int] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    percentage: Optional[float] = None
    throughput: float = 0.0
    eta_seconds: Optional[float] = None
    status: str = "pending"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ProgressSnapshot(BaseModel):
    """Overall and per-entity progress handed to the reporting sink"""

    total: Optional[int] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    percentage: Optional[float] = None
    throughput: float = 0.0
    eta_seconds: Optional[float] = None
    elapsed_seconds: float = 0.0
    batches: int = 0
    completed: bool = False
    entities: Dict[str, EntityProgress] = Field(default_factory=dict)
    line: str = ""
