"""
Value detectors used by schema analysis.

Primitive-type detectors are evaluated in declaration order; that order is
also the tie-break when two types score the same hit-rate. Pattern
detectors describe structural shapes (slug, code, ...) and never decide a
field's type.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlparse
import ipaddress
import json
import re


class Detector(ABC):
    """A named check over a single stripped, non-empty value"""

    name: str = ""

    @abstractmethod
    def detect(self, value: str) -> bool:
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


class RegexDetector(Detector):

    def __init__(self, name: str, pattern: str, flags: int = 0, max_length: Optional[int] = None):
        self.name = name
        self.pattern = re.compile(pattern, flags)
        self.max_length = max_length

    def detect(self, value: str) -> bool:
        if self.max_length is not None and len(value) > self.max_length:
            return False
        return self.pattern.match(value) is not None


_NUMERIC = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def is_numeric(value: str) -> bool:
    return _NUMERIC.match(value) is not None


# ============================================================================
# Primitive type detectors
# ============================================================================

class IntegerDetector(Detector):
    """Digits, or a numeric literal with an integral value ("5.0")"""

    name = "integer"

    def detect(self, value: str) -> bool:
        if not is_numeric(value):
            return False
        if re.match(r"^[+-]?\d+$", value):
            return True
        return float(value).is_integer()


class DecimalDetector(Detector):

    name = "decimal"

    def detect(self, value: str) -> bool:
        return is_numeric(value) and not float(value).is_integer()


class BooleanDetector(Detector):

    name = "boolean"
    VALUES = frozenset(["true", "false", "1", "0", "yes", "no", "on", "off"])

    def detect(self, value: str) -> bool:
        return value.lower() in self.VALUES


class EmailDetector(RegexDetector):

    def __init__(self):
        super().__init__("email", r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")


class UrlDetector(Detector):

    name = "url"
    SCHEMES = frozenset(["http", "https", "ftp", "ftps"])

    def detect(self, value: str) -> bool:
        if " " in value:
            return False
        try:
            parsed = urlparse(value)
        except ValueError:
            return False
        return parsed.scheme.lower() in self.SCHEMES and bool(parsed.netloc)


class DateDetector(Detector):
    """
    A value is a date only when it has a date shape AND actually parses.
    """

    name = "date"

    ISO_SHAPE = re.compile(
        r"^\d{4}-\d{2}-\d{2}"
        r"([ T]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$"
    )
    SLASH_SHAPE = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")

    def detect(self, value: str) -> bool:
        if self.ISO_SHAPE.match(value):
            return self._parse_iso(value) is not None
        if self.SLASH_SHAPE.match(value):
            for fmt in ("%m/%d/%Y", "%d/%m/%Y"):
                try:
                    datetime.strptime(value, fmt)
                    return True
                except ValueError:
                    continue
        return False

    @staticmethod
    def _parse_iso(value: str) -> Optional[datetime]:
        candidate = value.replace("Z", "+00:00")
        # fromisoformat on older interpreters wants +HH:MM
        candidate = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", candidate)
        try:
            return datetime.fromisoformat(candidate)
        except ValueError:
            return None


class JsonDetector(Detector):
    """JSON objects and arrays; bare scalars are left to the other detectors"""

    name = "json"

    def detect(self, value: str) -> bool:
        if not value or value[0] not in "{[":
            return False
        try:
            json.loads(value)
        except ValueError:
            return False
        return True


class UuidDetector(RegexDetector):

    def __init__(self):
        super().__init__(
            "uuid",
            r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
            re.IGNORECASE
        )


class IpAddressDetector(Detector):

    name = "ip_address"

    def detect(self, value: str) -> bool:
        try:
            ipaddress.ip_address(value)
        except ValueError:
            return False
        return True


# ============================================================================
# Structural pattern detectors
# ============================================================================

class EnumLikeDetector(Detector):
    """Short, non-numeric tokens"""

    name = "enum_like"

    def detect(self, value: str) -> bool:
        return len(value) <= 50 and not is_numeric(value)


def default_type_detectors() -> List[Detector]:
    return [
        IntegerDetector(),
        DecimalDetector(),
        BooleanDetector(),
        EmailDetector(),
        UrlDetector(),
        DateDetector(),
        JsonDetector(),
        UuidDetector(),
        IpAddressDetector(),
    ]


def default_pattern_detectors() -> List[Detector]:
    return [
        RegexDetector("foreign_key", r"^\d{1,11}$"),
        RegexDetector("slug", r"^[a-z0-9]+(?:-[a-z0-9]+)+$"),
        RegexDetector("name", r"^[A-Z][a-z]+(?: [A-Z][a-z]+)*$"),
        RegexDetector("code", r"^[A-Z0-9][A-Z0-9_\-]*$", max_length=20),
        EnumLikeDetector(),
    ]


TYPE_DETECTORS = default_type_detectors()


def detect_primitive(value: Optional[str], detectors: Optional[List[Detector]] = None) -> str:
    """First matching primitive type for a single value, "string" otherwise"""
    if value is None:
        return "null"
    value = value.strip()
    if not value:
        return "empty"
    for detector in detectors or TYPE_DETECTORS:
        if detector.detect(value):
            return detector.name
    return "string"
