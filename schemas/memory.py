"""
Pydantic schema for memory governor state
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from models.base import PressureLevel


class MemoryState(BaseModel):
    """Snapshot produced by every governor sample"""

    current_usage: int = Field(..., ge=0, description="Bytes in use by the process")
    ceiling: Optional[int] = Field(None, description="Configured ceiling in bytes, None when unlimited")
    usage_ratio: float = 0.0
    level: PressureLevel = PressureLevel.NORMAL
    batch_size: int
    original_batch_size: int
    peak_usage: int = 0
    growth_rate: float = Field(0.0, description="Bytes per second from the recent history trend")
    trend: str = "stable"
    seconds_to_ceiling: Optional[float] = None
    last_collection_at: Optional[datetime] = None
    sampled_at: datetime

    class Config:
        use_enum_values = True
