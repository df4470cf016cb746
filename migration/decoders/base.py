"""
Abstract base class for streaming source decoders
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
import logging
import os

from core.config import settings as default_settings, Settings
from core.exceptions import DecodeError, SourceUnreadable
from models.base import SourceKind
from schemas.records import Record

logger = logging.getLogger(__name__)

RawRow = Tuple[Dict[str, Optional[str]], Dict[str, Any]]


class DecoderHandle:
    """
    An opened source.

    Holds whatever a decoder learned while opening the source (headers,
    delimiter, record element, table shapes). A handle yields its records
    once; reading again requires a fresh handle.
    """

    def __init__(self, source: Path, kind: SourceKind, options: Optional[Dict[str, Any]] = None):
        self.source = source
        self.kind = kind
        self.options = options or {}
        self.headers: List[str] = []
        self.state: Dict[str, Any] = {}
        self.size_bytes = 0
        self.consumed = False
        self.closed = False
        self.skipped_rows = 0
        self._resources: List[Any] = []

    def add_header(self, name: str):
        if name not in self.headers:
            self.headers.append(name)

    def track(self, resource):
        """Register a file-like resource to close with the handle"""
        self._resources.append(resource)
        return resource

    def close(self):
        for resource in self._resources:
            try:
                resource.close()
            except OSError as e:
                logger.debug(f"Ignoring close failure on {self.source}: {e}")
        self._resources = []
        self.closed = True

    def describe(self) -> Dict[str, Any]:
        """Resumable description of the handle for checkpoint state"""
        return {
            "source": str(self.source),
            "kind": self.kind.value,
            "headers": list(self.headers),
            "skipped_rows": self.skipped_rows,
            **{k: v for k, v in self.state.items() if isinstance(v, (str, int, float, bool, type(None)))}
        }


class Decoder(ABC):
    """
    Abstract base class for all source decoders.

    Responsibilities:
    - Validate the source on open (exists, readable, within size limit)
    - Stream records lazily, never materializing the whole source
    - Establish a canonical header order
    """

    kind: SourceKind = SourceKind.UNKNOWN

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def open(self, source: Union[str, Path], **options) -> DecoderHandle:
        """
        Open a source and inspect its structure.

        Raises:
            SourceUnreadable: Missing, unreadable or oversized source
        """
        path = Path(source)
        size = self._check_source(path, options.pop("max_bytes", None))

        handle = DecoderHandle(path, self.kind, options)
        handle.size_bytes = size
        self._prepare(handle)

        logger.info(
            f"Opened {self.kind.value} source {path} "
            f"({size} bytes, {len(handle.headers)} known fields)"
        )
        return handle

    def header_names(self, handle: DecoderHandle) -> List[str]:
        """Canonical field order known so far"""
        return list(handle.headers)

    def records(self, handle: DecoderHandle, start: int = 0) -> Iterator[Record]:
        """
        Lazy, single-pass sequence of records.

        Args:
            handle: Handle returned by open()
            start: Position to resume from; earlier records are skipped

        Raises:
            DecodeError: If the handle was already consumed
        """
        if handle.consumed or handle.closed:
            raise DecodeError(
                "Decoder handle already consumed; reopen the source to read it again",
                context={"source": str(handle.source)}
            )
        handle.consumed = True
        if start:
            logger.info(f"Skipping {start} already processed records in {handle.source}")
        return self._generate(handle, start)

    def skip(self, handle: DecoderHandle, count: int) -> Iterator[Record]:
        """Records after the first count, for resuming sources that cannot seek"""
        return self.records(handle, start=max(0, count))

    def _generate(self, handle: DecoderHandle, start: int) -> Iterator[Record]:
        position = 0
        try:
            for values, provenance in self._iter_rows(handle):
                if position >= start:
                    yield Record(values=values, position=position, provenance=provenance)
                position += 1
        finally:
            handle.close()

    def count(self, source: Union[str, Path], **options) -> int:
        """Count records with a full streaming pass over a fresh handle"""
        handle = self.open(source, **options)
        total = 0
        for _ in self.records(handle):
            total += 1
        return total

    def _check_source(self, path: Path, max_bytes: Optional[int] = None) -> int:
        limit = max_bytes if max_bytes is not None else self.settings.MAX_SOURCE_BYTES

        if not path.exists():
            raise SourceUnreadable(
                f"Source not found: {path}",
                context={"source": str(path), "reason": "missing"}
            )
        if not path.is_file():
            raise SourceUnreadable(
                f"Source is not a regular file: {path}",
                context={"source": str(path), "reason": "not_a_file"}
            )
        if not os.access(path, os.R_OK):
            raise SourceUnreadable(
                f"Source is not readable: {path}",
                context={"source": str(path), "reason": "unreadable"}
            )

        size = path.stat().st_size
        if limit is not None and size > limit:
            raise SourceUnreadable(
                f"Source exceeds configured size limit: {path}",
                context={"source": str(path), "reason": "oversized", "size_bytes": size, "limit_bytes": limit}
            )
        return size

    @abstractmethod
    def _prepare(self, handle: DecoderHandle):
        """Inspect the source and fill in headers/state on the handle"""
        pass

    @abstractmethod
    def _iter_rows(self, handle: DecoderHandle) -> Iterator[RawRow]:
        """Yield (values, provenance) pairs in source order"""
        pass
