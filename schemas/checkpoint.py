"""
Pydantic schema for migration checkpoints
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class Checkpoint(BaseModel):
    """
    Durable snapshot of migration progress.

    cursor is the number of source records fully handled; resuming skips
    exactly that many records.
    """

    id: str
    run_id: str
    sequence: int = Field(..., ge=0)
    cursor: int = Field(..., ge=0)
    success_count: int = Field(0, ge=0)
    failure_count: int = Field(0, ge=0)
    current_batch_index: int = Field(0, ge=0)
    total_batches: Optional[int] = None
    memory: Optional[Dict[str, Any]] = None
    state: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        frozen = True

    @property
    def processed(self) -> int:
        return self.success_count + self.failure_count

    @property
    def status(self) -> Optional[str]:
        return self.state.get("status")
