"""
Hierarchical markup (XML) decoder built on lxml iterparse.

Elements are streamed and cleared as soon as a record has been emitted, so
memory stays flat regardless of document size. Entity resolution, DTD
loading and network access are disabled unless explicitly enabled.
"""

from collections import Counter
from typing import Any, Dict, Iterator, List, Optional
import json
import logging

from lxml import etree

from core.exceptions import DecodeError
from migration.decoders.base import Decoder, DecoderHandle, RawRow
from models.base import SourceKind

logger = logging.getLogger(__name__)

DETECTION_ELEMENT_LIMIT = 5000


def local_name(tag: str) -> str:
    """Strip a {namespace} prefix"""
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def element_text(element) -> str:
    return "".join(element.itertext()).strip()


class MarkupDecoder(Decoder):
    """
    Stream records out of an XML document.

    Options:
        record_tag: Local name of the repeating record element. When absent,
            the most frequent element whose children are all leaves is used.
    """

    kind = SourceKind.MARKUP

    def _parser_options(self, handle: DecoderHandle) -> Dict[str, Any]:
        return {
            "resolve_entities": handle.options.get("resolve_entities", self.settings.XML_RESOLVE_ENTITIES),
            "load_dtd": handle.options.get("load_dtd", self.settings.XML_LOAD_DTD),
            "no_network": True,
            "huge_tree": False,
            "remove_comments": True,
            "remove_pis": True,
        }

    def _prepare(self, handle: DecoderHandle):
        record_tag = handle.options.get("record_tag")
        first_fields: Dict[str, List[str]] = {}

        if handle.size_bytes == 0:
            handle.state["empty"] = True
            handle.state["record_tag"] = record_tag
            return

        candidates: Counter = Counter()
        leaves: Counter = Counter()
        scanned = 0

        try:
            context = etree.iterparse(str(handle.source), events=("end",), **self._parser_options(handle))
            for _, element in context:
                if not isinstance(element.tag, str):
                    continue
                scanned += 1
                tag = local_name(element.tag)
                children = [c for c in element if isinstance(c.tag, str)]

                if children and all(len(c) == 0 for c in children):
                    candidates[tag] += 1
                elif not children and element.getparent() is not None:
                    leaves[tag] += 1

                if tag not in first_fields and (children or tag == record_tag):
                    first_fields[tag] = list(self._element_values(element).keys())

                if scanned >= DETECTION_ELEMENT_LIMIT:
                    break
        except etree.XMLSyntaxError as e:
            if scanned == 0:
                raise DecodeError(
                    f"Malformed markup in {handle.source}",
                    context={"source": str(handle.source), "line_number": getattr(e, "lineno", None)},
                    original_exception=e
                )
            # Tolerated here; iteration reports it at the offending record
            logger.warning(f"Markup error while sampling {handle.source}: {e}")

        if record_tag is None:
            if candidates:
                record_tag = candidates.most_common(1)[0][0]
            elif leaves:
                record_tag = leaves.most_common(1)[0][0]

        if record_tag is None:
            handle.state["empty"] = True
        handle.state["record_tag"] = record_tag

        if record_tag in first_fields:
            for name in first_fields[record_tag]:
                handle.add_header(name)

        logger.debug(f"Markup record element for {handle.source}: {record_tag}")

    def _element_values(self, element) -> Dict[str, Optional[str]]:
        values: Dict[str, Optional[str]] = {}
        for name, value in element.attrib.items():
            values[local_name(name)] = value

        children = [c for c in element if isinstance(c.tag, str)]
        if not children:
            text = (element.text or "").strip()
            values[local_name(element.tag)] = text
            return values

        grouped: Dict[str, List[str]] = {}
        for child in children:
            grouped.setdefault(local_name(child.tag), []).append(element_text(child))

        for name, texts in grouped.items():
            if name in values:
                name = f"{name}_element"
            values[name] = texts[0] if len(texts) == 1 else json.dumps(texts)
        return values

    def _iter_rows(self, handle: DecoderHandle) -> Iterator[RawRow]:
        record_tag = handle.state.get("record_tag")
        if handle.state.get("empty") or not record_tag:
            return

        source = str(handle.source)
        emitted = 0
        try:
            context = etree.iterparse(source, events=("end",), **self._parser_options(handle))
            for _, element in context:
                if not isinstance(element.tag, str) or local_name(element.tag) != record_tag:
                    continue

                values = self._element_values(element)
                for name in values:
                    handle.add_header(name)

                provenance = {"source": source, "line": element.sourceline, "element": record_tag}

                # Release the processed subtree and everything before it
                element.clear(keep_tail=True)
                parent = element.getparent()
                if parent is not None:
                    while element.getprevious() is not None:
                        del parent[0]

                emitted += 1
                yield {name: values.get(name) for name in handle.headers}, provenance
        except etree.XMLSyntaxError as e:
            raise DecodeError(
                f"Malformed markup in {source} after {emitted} records",
                context={"source": source, "line_number": getattr(e, "lineno", None)},
                original_exception=e
            )
