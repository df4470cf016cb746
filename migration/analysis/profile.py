"""
Per-field accumulator for schema analysis
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional, Set

from migration.analysis.detectors import Detector, is_numeric


@dataclass
class FieldProfile:
    """
    Mutable statistics for one field, updated once per sampled record.

    The sample cache is capped at sample_cap values; counters and the
    seen-value set cover every sampled value.
    """

    name: str
    sample_cap: int = 50
    total: int = 0
    null_count: int = 0
    empty_count: int = 0
    min_length: Optional[int] = None
    max_length: int = 0
    total_length: int = 0
    samples: List[str] = field(default_factory=list)
    type_hits: Counter = field(default_factory=Counter)
    pattern_hits: Counter = field(default_factory=Counter)
    frequencies: Counter = field(default_factory=Counter)
    seen: Set[str] = field(default_factory=set)
    duplicate_found: bool = False
    typed_values: int = 0
    max_integer_digits: int = 0
    max_scale: int = 0

    def observe(self, value: Optional[str], type_detectors: List[Detector], pattern_detectors: List[Detector]):
        self.total += 1

        if value is None:
            self.null_count += 1
            return

        value = value.strip()
        if not value:
            self.empty_count += 1
            return

        length = len(value)
        self.total_length += length
        self.max_length = max(self.max_length, length)
        self.min_length = length if self.min_length is None else min(self.min_length, length)

        if len(self.samples) < self.sample_cap:
            self.samples.append(value)

        if value in self.seen:
            self.duplicate_found = True
        else:
            self.seen.add(value)
        self.frequencies[value] += 1

        matched = False
        for detector in type_detectors:
            if detector.detect(value):
                self.type_hits[detector.name] += 1
                matched = True
        if matched:
            self.typed_values += 1

        for detector in pattern_detectors:
            if detector.detect(value):
                self.pattern_hits[detector.name] += 1

        if is_numeric(value) and "e" not in value.lower():
            digits = value.lstrip("+-")
            whole, _, fraction = digits.partition(".")
            self.max_integer_digits = max(self.max_integer_digits, len(whole.lstrip("0")) or 1)
            self.max_scale = max(self.max_scale, len(fraction))

    def skip(self, count: int):
        """Account for records sampled before this field first appeared"""
        self.total += count
        self.null_count += count

    @property
    def non_empty(self) -> int:
        return self.total - self.null_count - self.empty_count

    @property
    def non_empty_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.non_empty / self.total

    @property
    def blank_ratio(self) -> float:
        if self.total == 0:
            return 1.0
        return (self.null_count + self.empty_count) / self.total

    @property
    def distinct(self) -> int:
        return len(self.seen)

    @property
    def average_length(self) -> float:
        if self.non_empty == 0:
            return 0.0
        return self.total_length / self.non_empty

    def hit_rate(self, name: str) -> float:
        if self.non_empty == 0:
            return 0.0
        return self.type_hits.get(name, 0) / self.non_empty

    def pattern_rate(self, name: str) -> float:
        if self.non_empty == 0:
            return 0.0
        return self.pattern_hits.get(name, 0) / self.non_empty
