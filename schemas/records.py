"""
Pydantic schema for decoded source records
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List


class Record(BaseModel):
    """
    One structured unit of decoded input (a row, an element, a value tuple).

    values keeps the decoder's canonical field order; every value is the raw
    scalar text of the source or None.
    """

    values: Dict[str, Optional[str]]
    position: int = Field(..., ge=0, description="Zero-based index of the record in the stream")
    provenance: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @property
    def field_names(self) -> List[str]:
        return list(self.values.keys())

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(name, default)

    def __getitem__(self, name: str) -> Optional[str]:
        return self.values[name]

    def describe(self) -> Dict[str, Any]:
        """Provenance plus position, used in error context"""
        return {"position": self.position, **self.provenance}
