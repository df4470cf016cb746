"""
Pydantic schemas for the inferred schema descriptor.

A SchemaDescriptor is the immutable result of schema analysis. It is handed
to external generators, so every model here serializes with model_dump() /
model_dump_json() and keeps field order as analyzed.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class FieldDefinition(BaseModel):
    """Finalized definition of a single field"""

    name: str
    type: str = Field(..., description="Detected primitive type")
    storage_type: str = Field(..., description="Suggested storage type for the destination")
    nullable: bool
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    unique: bool = False
    index: bool = False
    confidence: float = Field(..., ge=0, le=100)
    non_empty_ratio: float = Field(0.0, ge=0, le=1)
    enum_values: Optional[List[str]] = None

    class Config:
        frozen = True


class Relationship(BaseModel):
    """Suggested reference from a foreign-key-shaped field"""

    type: str = "belongs_to"
    field: str
    related_entity: str
    method_name: str

    class Config:
        frozen = True


class IndexSuggestion(BaseModel):
    """Suggested index with the reason it was proposed"""

    field: str
    type: str = "index"
    reason: str

    class Config:
        frozen = True


class DescriptorMetadata(BaseModel):
    """Analysis bookkeeping"""

    total_records: Optional[int] = None
    sample_size: int = 0
    analysis_confidence: float = Field(0.0, ge=0, le=100)
    detected_patterns: Dict[str, List[str]] = Field(default_factory=dict)
    source_path: Optional[str] = None

    class Config:
        frozen = True


class SchemaDescriptor(BaseModel):
    """
    Immutable inferred schema for a whole source.

    Equality is structural, so analyzing the same sample twice yields equal
    descriptors.
    """

    source_kind: str
    entity_name: str
    table_name: str
    fields: List[FieldDefinition] = Field(default_factory=list)
    relationships: List[Relationship] = Field(default_factory=list)
    indexes: List[IndexSuggestion] = Field(default_factory=list)
    fillable: List[str] = Field(default_factory=list)
    casts: Dict[str, str] = Field(default_factory=dict)
    validation_rules: Dict[str, List[str]] = Field(default_factory=dict)
    metadata: DescriptorMetadata = Field(default_factory=DescriptorMetadata)

    class Config:
        frozen = True

    def field(self, name: str) -> Optional[FieldDefinition]:
        """Look up a field definition by name"""
        for definition in self.fields:
            if definition.name == name:
                return definition
        return None

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready mapping for external generators"""
        return self.model_dump(mode="json")
