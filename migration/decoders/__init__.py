"""
Streaming decoders for migration sources.

Modules:
    base: Decoder base class and DecoderHandle
    delimiter: Delimiter scoring for tabular text
    tabular: CSV/TSV decoder (pandas, chunked)
    markup: XML decoder (lxml iterparse)
    relational: SQL dump decoder (CREATE TABLE / INSERT)

Usage:
    from migration.decoders import open_decoder

    decoder = open_decoder("exports/users.csv")
    handle = decoder.open("exports/users.csv")
    for record in decoder.records(handle):
        ...
"""

from pathlib import Path
from typing import Optional, Union

from core.config import Settings
from core.exceptions import SourceUnreadable
from migration.decoders.base import Decoder, DecoderHandle
from migration.decoders.markup import MarkupDecoder
from migration.decoders.relational import RelationalDecoder
from migration.decoders.tabular import TabularDecoder
from models.base import SourceKind

EXTENSION_KINDS = {
    ".csv": SourceKind.TABULAR,
    ".tsv": SourceKind.TABULAR,
    ".tab": SourceKind.TABULAR,
    ".txt": SourceKind.TABULAR,
    ".xml": SourceKind.MARKUP,
    ".sql": SourceKind.RELATIONAL,
}

DECODERS = {
    SourceKind.TABULAR: TabularDecoder,
    SourceKind.MARKUP: MarkupDecoder,
    SourceKind.RELATIONAL: RelationalDecoder,
}


def detect_source_kind(source: Union[str, Path]) -> SourceKind:
    return EXTENSION_KINDS.get(Path(source).suffix.lower(), SourceKind.UNKNOWN)


def open_decoder(source: Union[str, Path], settings: Optional[Settings] = None) -> Decoder:
    """
    Decoder instance for a source, chosen by file extension.

    Raises:
        SourceUnreadable: Unsupported source kind
    """
    kind = detect_source_kind(source)
    if kind not in DECODERS:
        raise SourceUnreadable(
            f"Unsupported source type: {source}",
            context={"source": str(source), "reason": "unsupported"}
        )
    return DECODERS[kind](settings=settings)


__all__ = [
    "Decoder",
    "DecoderHandle",
    "TabularDecoder",
    "MarkupDecoder",
    "RelationalDecoder",
    "detect_source_kind",
    "open_decoder",
]
