"""
Pydantic schemas for the rollback log
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from models.base import OperationType
import uuid


def new_operation_id() -> str:
    return uuid.uuid4().hex


class Operation(BaseModel):
    """
    A single recorded mutation.

    key identifies the target row; before/after are the row images around
    the mutation. Operations are frozen once created.
    """

    id: str = Field(default_factory=new_operation_id)
    type: OperationType
    target: str = Field(..., min_length=1)
    key: Optional[Dict[str, Any]] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: Optional[str] = None
    worker_id: int = 0
    sequence: int = 0
    inverse_of: Optional[str] = None

    class Config:
        frozen = True
        use_enum_values = True

    @property
    def is_inverse(self) -> bool:
        return self.inverse_of is not None


class RollbackEntry(BaseModel):
    """Per-operation rollback outcome"""

    operation_id: str
    type: str
    target: str
    status: str = Field(..., description="reverted, failed, unsafe or skipped")
    error: Optional[str] = None
    could_not_safely_invert: bool = False


class RollbackReport(BaseModel):
    """Outcome of a rollback pass"""

    run_id: str
    mode: str
    success: bool
    aborted: bool = False
    abort_reason: Optional[str] = None
    operations_considered: int = 0
    reverted: int = 0
    failed: int = 0
    unsafe: int = 0
    entries: List[RollbackEntry] = Field(default_factory=list)
    duration: float = 0.0


class RollbackPoint(BaseModel):
    """Named position in the log to roll back to"""

    id: str
    name: str
    run_id: str
    operations_count: int
    sequences: Dict[int, int] = Field(default_factory=dict, description="Last sequence per worker segment")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RollbackPlan(BaseModel):
    """Dry description of what a rollback would do"""

    run_id: str
    total_operations: int
    operations_by_type: Dict[str, int] = Field(default_factory=dict)
    targets: List[str] = Field(default_factory=list)
    complexity: str
    warnings: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    steps: List[Dict[str, Any]] = Field(default_factory=list)
