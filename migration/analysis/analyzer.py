"""
Schema Analyzer - infers a SchemaDescriptor from a bounded record sample.

For each field the analyzer scores every registered type detector by its
hit-rate over non-empty values; the best score (ties to declaration order)
becomes the field type and its rate the confidence. The remaining
suggestions (nullability, uniqueness, indexes, relationships, casts,
validation rules) are derived from the same FieldProfile.
"""

from itertools import islice
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union
import logging

from core.config import settings as default_settings, Settings
from core.exceptions import AnalysisError, MigrationError
from migration.analysis.detectors import Detector, default_pattern_detectors, default_type_detectors
from migration.analysis.naming import camel_case, entity_name_for, studly_case, table_name_for
from migration.analysis.profile import FieldProfile
from migration.decoders.base import Decoder
from schemas.records import Record
from schemas.schema import (
    DescriptorMetadata,
    FieldDefinition,
    IndexSuggestion,
    Relationship,
    SchemaDescriptor,
)

logger = logging.getLogger(__name__)

NULLABLE_THRESHOLD = 0.10
UNIQUE_MIN_SAMPLE = 10
ENUM_MAX_DISTINCT = 10
FOREIGN_KEY_SUFFIXES = ("_id",)
SEARCHABLE_VOCABULARY = ("email", "username", "slug", "code", "sku")
NON_FILLABLE = frozenset(["id", "created_at", "updated_at"])
LENGTH_BUCKETS = (50, 100, 255)
STRING_STORAGE = frozenset(["string", "email", "ip_address"])

STORAGE_TYPES = {
    "integer": "integer",
    "decimal": "decimal",
    "boolean": "boolean",
    "email": "string",
    "url": "text",
    "date": "datetime",
    "json": "json",
    "uuid": "uuid",
    "ip_address": "string",
    "string": "string",
}

TYPE_RULES = {
    "integer": "integer",
    "decimal": "numeric",
    "boolean": "boolean",
    "email": "email",
    "url": "url",
    "date": "date",
    "json": "json",
    "uuid": "uuid",
    "ip_address": "ip",
    "string": "string",
}


def length_bucket(max_length: int) -> Optional[int]:
    """Smallest bucket holding max_length, None when unbounded"""
    for bucket in LENGTH_BUCKETS:
        if max_length <= bucket:
            return bucket
    return None


def foreign_key_stem(name: str) -> Optional[str]:
    lower = name.lower()
    for suffix in FOREIGN_KEY_SUFFIXES:
        if lower.endswith(suffix) and len(lower) > len(suffix):
            return name[: -len(suffix)]
    return None


class SchemaAnalyzer:
    """
    Profile a sample of records and produce an immutable SchemaDescriptor.

    Detectors are injectable so new types or patterns can be registered
    without touching the analysis itself.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        type_detectors: Optional[List[Detector]] = None,
        pattern_detectors: Optional[List[Detector]] = None
    ):
        self.settings = settings or default_settings
        self.type_detectors = type_detectors if type_detectors is not None else default_type_detectors()
        self.pattern_detectors = pattern_detectors if pattern_detectors is not None else default_pattern_detectors()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def analyze(
        self,
        decoder: Decoder,
        source: Union[str, Path],
        sample_size: Optional[int] = None,
        entity_name: Optional[str] = None,
        count_total: bool = False,
        **options
    ) -> SchemaDescriptor:
        """
        Sample up to sample_size records from a source and infer its schema.

        Args:
            decoder: Decoder for the source format
            source: Path of the source
            sample_size: Record limit (defaults to SAMPLE_SIZE)
            entity_name: Override for the suggested entity name
            count_total: Run a second streaming pass to count all records
            **options: Decoder options (delimiter, record_tag, table, ...)

        Raises:
            SourceUnreadable / DecodeError: From the decoder
        """
        limit = sample_size or self.settings.SAMPLE_SIZE
        handle = decoder.open(source, **dict(options))

        try:
            records = decoder.records(handle)
            profiles, order, sampled, exhausted = self._profile(
                records, decoder.header_names(handle), limit
            )
        except MigrationError:
            raise
        except Exception as e:
            raise AnalysisError(
                "Unexpected error while sampling records",
                context={"source": str(source)},
                original_exception=e
            )
        finally:
            handle.close()

        total: Optional[int] = sampled if exhausted else None
        if count_total and total is None:
            total = decoder.count(source, **dict(options))

        stem = entity_name or handle.state.get("table") or Path(source).stem
        return self._finalize(
            profiles,
            order,
            sampled,
            source_kind=decoder.kind.value,
            stem=stem,
            total_records=total,
            source_path=str(source),
        )

    def analyze_records(
        self,
        records: Iterable[Record],
        entity_name: str,
        headers: Optional[List[str]] = None,
        sample_size: Optional[int] = None,
        source_kind: str = "unknown"
    ) -> SchemaDescriptor:
        """Infer a schema from records that are already decoded"""
        limit = sample_size or self.settings.SAMPLE_SIZE
        profiles, order, sampled, exhausted = self._profile(iter(records), headers or [], limit)
        return self._finalize(
            profiles,
            order,
            sampled,
            source_kind=source_kind,
            stem=entity_name,
            total_records=sampled if exhausted else None,
        )

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _profile(
        self,
        records: Iterator[Record],
        headers: List[str],
        limit: int
    ) -> Tuple[Dict[str, FieldProfile], List[str], int, bool]:
        chunk_size = max(1, self.settings.SAMPLE_CHUNK_SIZE)
        cap = self.settings.PROFILE_SAMPLE_CAP
        order: List[str] = list(headers)
        profiles: Dict[str, FieldProfile] = {name: FieldProfile(name, sample_cap=cap) for name in order}
        sampled = 0
        exhausted = False

        while sampled < limit:
            wanted = min(chunk_size, limit - sampled)
            chunk = list(islice(records, wanted))

            for record in chunk:
                for name in record.values:
                    if name not in profiles:
                        profile = FieldProfile(name, sample_cap=cap)
                        profile.skip(sampled)
                        profiles[name] = profile
                        order.append(name)
                for name in order:
                    profiles[name].observe(record.values.get(name), self.type_detectors, self.pattern_detectors)
                sampled += 1

            if len(chunk) < wanted:
                exhausted = True
                break

        logger.info(f"Sampled {sampled} records across {len(order)} fields")
        return profiles, order, sampled, exhausted

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _detect_type(self, profile: FieldProfile) -> Tuple[str, float]:
        best_name, best_rate = None, 0.0
        for detector in self.type_detectors:
            rate = profile.hit_rate(detector.name)
            if rate > best_rate:
                best_name, best_rate = detector.name, rate

        if best_name is None:
            # Nothing typed matched: plain text
            return "string", 100.0 if profile.non_empty else 0.0
        return best_name, round(best_rate * 100, 2)

    def _enum_values(self, profile: FieldProfile, field_type: str) -> Optional[List[str]]:
        if field_type not in ("string", "integer") or profile.non_empty == 0:
            return None
        distinct = profile.distinct
        if distinct == 0 or distinct > ENUM_MAX_DISTINCT or distinct == profile.non_empty:
            return None
        if min(profile.frequencies.values()) < 2:
            return None
        if field_type == "integer" and distinct > 3:
            return None
        return sorted(profile.frequencies)

    def _define(self, profile: FieldProfile, sampled: int) -> FieldDefinition:
        field_type, confidence = self._detect_type(profile)
        nullable = profile.blank_ratio > NULLABLE_THRESHOLD
        unique = not profile.duplicate_found and profile.non_empty > 0 and sampled > UNIQUE_MIN_SAMPLE

        storage = STORAGE_TYPES.get(field_type, "string")
        length = None
        precision = scale = None

        if field_type in STRING_STORAGE:
            length = length_bucket(profile.max_length)
            if length is None:
                storage = "text"
        elif field_type == "decimal":
            scale = max(profile.max_scale, 1)
            precision = profile.max_integer_digits + scale
        elif field_type == "integer" and profile.max_integer_digits > 9:
            storage = "big_integer"

        lower = profile.name.lower()
        index = (
            unique
            or any(term in lower for term in SEARCHABLE_VOCABULARY)
            or (foreign_key_stem(profile.name) is not None and field_type == "integer")
        )

        return FieldDefinition(
            name=profile.name,
            type=field_type,
            storage_type=storage,
            nullable=nullable,
            length=length,
            precision=precision,
            scale=scale,
            unique=unique,
            index=index,
            confidence=confidence,
            non_empty_ratio=round(profile.non_empty_ratio, 4),
            enum_values=self._enum_values(profile, field_type) if not unique else None,
        )

    @staticmethod
    def _index_reason(definition: FieldDefinition) -> str:
        if definition.unique:
            return "Unique values detected"
        if "email" in definition.name.lower():
            return "Email field - frequently searched"
        if foreign_key_stem(definition.name) is not None and definition.type == "integer":
            return "Foreign key relationship"
        return "Frequently queried field"

    @staticmethod
    def _cast(definition: FieldDefinition) -> Optional[str]:
        if definition.type == "integer":
            return "integer"
        if definition.type == "decimal":
            return f"decimal:{definition.scale or 2}"
        if definition.type == "boolean":
            return "boolean"
        if definition.type == "date":
            return "datetime"
        if definition.type == "json":
            return "array"
        return None

    @staticmethod
    def _rules(definition: FieldDefinition) -> List[str]:
        rules = ["nullable" if definition.nullable else "required", TYPE_RULES.get(definition.type, "string")]
        if definition.length:
            rules.append(f"max:{definition.length}")
        if definition.unique:
            rules.append("unique")
        if definition.enum_values:
            rules.append("in:" + ",".join(definition.enum_values))
        return rules

    def _finalize(
        self,
        profiles: Dict[str, FieldProfile],
        order: List[str],
        sampled: int,
        source_kind: str,
        stem: str,
        total_records: Optional[int] = None,
        source_path: Optional[str] = None
    ) -> SchemaDescriptor:
        fields: List[FieldDefinition] = []
        relationships: List[Relationship] = []
        indexes: List[IndexSuggestion] = []
        casts: Dict[str, str] = {}
        rules: Dict[str, List[str]] = {}
        patterns: Dict[str, List[str]] = {}
        min_ratio = self.settings.PATTERN_MIN_RATIO

        for name in order:
            profile = profiles[name]
            definition = self._define(profile, sampled)
            fields.append(definition)

            if definition.index:
                indexes.append(IndexSuggestion(field=name, reason=self._index_reason(definition)))

            stem_name = foreign_key_stem(name)
            if stem_name is not None and definition.type == "integer":
                relationships.append(Relationship(
                    field=name,
                    related_entity=studly_case(stem_name),
                    method_name=camel_case(stem_name),
                ))

            cast = self._cast(definition)
            if cast:
                casts[name] = cast
            rules[name] = self._rules(definition)

            matched = [
                detector.name for detector in self.pattern_detectors
                if profile.pattern_rate(detector.name) >= min_ratio and profile.non_empty > 0
            ]
            if matched:
                patterns[name] = matched

        confidence = round(sum(f.confidence for f in fields) / len(fields), 2) if fields else 0.0
        entity = entity_name_for(stem) or "Record"
        table = table_name_for(stem) or "records"

        descriptor = SchemaDescriptor(
            source_kind=source_kind,
            entity_name=entity,
            table_name=table,
            fields=fields,
            relationships=relationships,
            indexes=indexes,
            fillable=[f.name for f in fields if f.name.lower() not in NON_FILLABLE],
            casts=casts,
            validation_rules=rules,
            metadata=DescriptorMetadata(
                total_records=total_records,
                sample_size=sampled,
                analysis_confidence=confidence,
                detected_patterns=patterns,
                source_path=source_path,
            ),
        )
        logger.info(
            f"Schema for {entity}: {len(fields)} fields, "
            f"confidence {confidence}, sample {sampled}"
        )
        return descriptor
