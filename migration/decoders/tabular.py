"""
Tabular text decoder (CSV, TSV and other delimited files)
"""

import io
import re
from itertools import islice
from typing import Iterator, List, Optional
import logging

import pandas as pd

from core.exceptions import DecodeError
from migration.analysis.detectors import detect_primitive
from migration.decoders.base import Decoder, DecoderHandle, RawRow
from migration.decoders.delimiter import detect_delimiter
from models.base import SourceKind

logger = logging.getLogger(__name__)

HEADER_VOCABULARY = frozenset([
    "id", "name", "title", "content", "description", "author", "date",
    "category", "tag", "tags", "status", "type", "slug", "url", "email",
    "created_at", "updated_at",
])
HEADER_TOKEN = re.compile(r"^[a-z_][a-z0-9_]*$")


def normalize_headers(raw: List[Optional[str]]) -> List[str]:
    """Strip, lowercase, snake spaces; fill blanks and de-duplicate"""
    headers: List[str] = []
    for index, value in enumerate(raw, start=1):
        name = (value or "").strip().lower().replace(" ", "_")
        if not name:
            name = f"column_{index}"
        candidate, suffix = name, 2
        while candidate in headers:
            candidate = f"{name}_{suffix}"
            suffix += 1
        headers.append(candidate)
    return headers


def looks_like_header(first: List[str], second: Optional[List[str]] = None) -> bool:
    """
    Decide whether the first row is a header row.

    A header is assumed when row 1 is mostly plain strings while row 2 is
    less so (type-signature contrast), or when more than half of the row 1
    cells look like column names.
    """
    cells = [c.strip() for c in first if c is not None]
    if not cells:
        return False

    first_types = [detect_primitive(c) for c in cells]
    string_ratio = first_types.count("string") / len(first_types)

    contrast = False
    if second:
        second_types = [detect_primitive(c) for c in second if c is not None]
        if second_types:
            second_ratio = second_types.count("string") / len(second_types)
            contrast = string_ratio > 0.7 and second_ratio < string_ratio

    shaped = sum(
        1 for c in cells
        if c.lower() in HEADER_VOCABULARY or c.lower().startswith("post_") or HEADER_TOKEN.match(c)
    )
    return contrast or shaped / len(cells) > 0.5


class TabularDecoder(Decoder):
    """
    Stream delimited text through pandas in fixed-size chunks.

    Supports:
    - Delimiter auto-detection (or an explicit delimiter option)
    - Header row auto-detection (or has_header option)
    - Ragged rows: short rows are padded with None, long rows truncated;
      rows deviating by more than COLUMN_TOLERANCE cells are skipped
    """

    kind = SourceKind.TABULAR

    def _read_sample(self, handle: DecoderHandle) -> List[str]:
        limit = handle.options.get("sample_lines", self.settings.DELIMITER_SAMPLE_LINES)
        with open(handle.source, "r", encoding=self._encoding(handle), errors="replace", newline="") as f:
            lines = [line for line in islice(f, limit * 4) if line.strip()]
        return lines[:limit]

    def _encoding(self, handle: DecoderHandle) -> str:
        return handle.options.get("encoding", self.settings.SOURCE_ENCODING)

    def _prepare(self, handle: DecoderHandle):
        lines = self._read_sample(handle)
        if not lines:
            handle.state["empty"] = True
            handle.state["delimiter"] = handle.options.get("delimiter", ",")
            handle.state["has_header"] = False
            return

        delimiter = handle.options.get("delimiter") or detect_delimiter(
            lines, min_score=self.settings.DELIMITER_MIN_SCORE
        )

        sniff = pd.read_csv(
            io.StringIO("".join(lines)),
            sep=delimiter,
            header=None,
            dtype=str,
            keep_default_na=False,
            engine="python",
            on_bad_lines="skip",
            nrows=2,
        )
        rows = [[self._cell(v) for v in row] for row in sniff.itertuples(index=False, name=None)]
        first = rows[0] if rows else []
        second = rows[1] if len(rows) > 1 else None

        has_header = handle.options.get("has_header")
        if has_header is None:
            has_header = looks_like_header(first, second)

        if has_header:
            handle.headers = normalize_headers(first)
        else:
            handle.headers = [f"column_{i}" for i in range(1, len(first) + 1)]

        handle.state["delimiter"] = delimiter
        handle.state["has_header"] = bool(has_header)
        logger.debug(
            f"Tabular structure for {handle.source}: delimiter={delimiter!r}, "
            f"header={has_header}, columns={len(handle.headers)}"
        )

    @staticmethod
    def _cell(value) -> Optional[str]:
        if value is None or (not isinstance(value, str) and pd.isna(value)):
            return None
        return str(value)

    def _iter_rows(self, handle: DecoderHandle) -> Iterator[RawRow]:
        if handle.state.get("empty") or not handle.headers:
            return

        headers = handle.headers
        width = len(headers)
        tolerance = handle.options.get("column_tolerance", self.settings.COLUMN_TOLERANCE)
        has_header = handle.state["has_header"]
        source = str(handle.source)

        def on_bad_line(bad_line: List[str]) -> Optional[List[str]]:
            excess = len(bad_line) - width
            if tolerance is not None and excess > tolerance:
                handle.skipped_rows += 1
                logger.warning(f"Skipping row with {len(bad_line)} fields (expected {width}) in {source}")
                return None
            return bad_line[:width]

        try:
            reader = pd.read_csv(
                handle.source,
                sep=handle.state["delimiter"],
                header=None,
                names=headers,
                skiprows=1 if has_header else 0,
                index_col=False,
                dtype=str,
                keep_default_na=False,
                engine="python",
                on_bad_lines=on_bad_line,
                skip_blank_lines=True,
                chunksize=handle.options.get("chunk_size", self.settings.DECODER_CHUNK_SIZE),
                encoding=self._encoding(handle),
                encoding_errors="replace",
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeError) as e:
            raise DecodeError(
                f"Cannot read tabular source {source}",
                context={"source": source},
                original_exception=e
            )

        handle.track(reader)
        data_row = 0
        try:
            for chunk in reader:
                for row in chunk.itertuples(index=False, name=None):
                    data_row += 1
                    cells = [self._cell(v) for v in row]

                    missing = sum(1 for c in cells if c is None)
                    if tolerance is not None and missing > tolerance:
                        handle.skipped_rows += 1
                        logger.warning(
                            f"Skipping row {data_row} with {width - missing} fields "
                            f"(expected {width}) in {source}"
                        )
                        continue

                    provenance = {"source": source, "row": data_row + (1 if has_header else 0)}
                    yield dict(zip(headers, cells)), provenance
        except pd.errors.ParserError as e:
            raise DecodeError(
                f"Malformed tabular data in {source} after row {data_row}",
                context={"source": source, "row": data_row},
                original_exception=e
            )
