"""
Schema inference over a bounded sample of decoded records.

Modules:
    detectors: Primitive-type and structural-pattern detectors
    profile: FieldProfile, the per-field accumulator
    naming: Entity/table naming helpers
    analyzer: SchemaAnalyzer producing a SchemaDescriptor
"""
