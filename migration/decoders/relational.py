"""
Relational dump script decoder (SQL CREATE TABLE / INSERT statements).

The script is tokenized statement by statement. Semicolons inside quoted
literals, backtick identifiers, comments or parenthesized lists never end
a statement. Only INSERT value tuples become records; CREATE TABLE
statements contribute column order and table shapes.
"""

import re
from typing import Any, Dict, Iterator, List, Optional, TextIO, Tuple
import logging

from pydantic import BaseModel, Field

from core.exceptions import DecodeError
from migration.decoders.base import Decoder, DecoderHandle, RawRow
from models.base import SourceKind

logger = logging.getLogger(__name__)

PRESCAN_STATEMENT_LIMIT = 50

_IDENT = r"[`\"\[]?[\w$.]+[`\"\]]?"
CREATE_TABLE = re.compile(
    rf"^CREATE\s+(?:TEMPORARY\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?({_IDENT})\s*\((.*)\)[^)]*$",
    re.IGNORECASE | re.DOTALL,
)
INSERT_INTO = re.compile(
    rf"^(?:INSERT|REPLACE)\s+(?:LOW_PRIORITY\s+|DELAYED\s+|HIGH_PRIORITY\s+)?(?:IGNORE\s+)?INTO\s+({_IDENT})"
    r"\s*(?:\(([^)]*)\))?\s*VALUES\s*(.*)$",
    re.IGNORECASE | re.DOTALL,
)
COLUMN_DEFINITION = re.compile(
    r"^[`\"\[]?([^`\"\]\s]+)[`\"\]]?\s+([A-Za-z]+(?:\s+(?:varying|precision))?)\s*(\([^)]*\))?\s*(.*)$",
    re.IGNORECASE | re.DOTALL,
)
DEFAULT_VALUE = re.compile(r"\bDEFAULT\s+('(?:[^'\\]|\\.|'')*'|\"[^\"]*\"|\S+)", re.IGNORECASE)
CONSTRAINT_PREFIXES = ("PRIMARY", "FOREIGN", "UNIQUE", "KEY", "INDEX", "CONSTRAINT", "FULLTEXT", "SPATIAL", "CHECK")

ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "Z": "\x1a", "b": "\b"}


class ColumnShape(BaseModel):
    """Declared column of a CREATE TABLE statement"""

    name: str
    type: str
    length: Optional[str] = None
    nullable: bool = True
    default: Optional[str] = None
    auto_increment: bool = False
    primary_key: bool = False
    unsigned: bool = False


class TableShape(BaseModel):
    """Declared table shape"""

    name: str
    columns: List[ColumnShape] = Field(default_factory=list)
    primary_key: List[str] = Field(default_factory=list)
    indexes: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


def strip_identifier(name: str) -> str:
    name = name.strip().strip("`\"[]")
    return name.split(".")[-1].strip("`\"[]")


def split_top_level(text: str, separator: str = ",") -> List[str]:
    """Split on separator outside quotes and parentheses"""
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    quote: Optional[str] = None
    escaped = False

    for ch in text:
        if quote:
            current.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue

        if ch in ("'", '"', "`"):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == separator and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)

    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def iter_statements(stream: TextIO) -> Iterator[Tuple[str, int]]:
    """
    Yield (statement, starting line) pairs from a SQL script.

    Reads line by line; state (quotes, comments, nesting) carries across
    lines so multi-line literals and statements are handled.
    """
    buffer: List[str] = []
    quote: Optional[str] = None
    escaped = False
    block_comment = False
    depth = 0
    start_line: Optional[int] = None

    for line_number, text in enumerate(stream, start=1):
        i = 0
        length = len(text)
        while i < length:
            ch = text[i]
            nxt = text[i + 1] if i + 1 < length else ""

            if block_comment:
                if ch == "*" and nxt == "/":
                    block_comment = False
                    i += 2
                    continue
                i += 1
                continue

            if quote:
                buffer.append(ch)
                if escaped:
                    escaped = False
                elif ch == "\\" and quote != "`":
                    escaped = True
                elif ch == quote:
                    if nxt == quote:
                        buffer.append(nxt)
                        i += 2
                        continue
                    quote = None
                i += 1
                continue

            if ch == "-" and nxt == "-" and (i + 2 >= length or text[i + 2] in " \t\r\n"):
                buffer.append("\n")
                break
            if ch == "#":
                buffer.append("\n")
                break
            if ch == "/" and nxt == "*":
                block_comment = True
                i += 2
                continue

            if ch in ("'", '"', "`"):
                quote = ch
            elif ch == "(":
                depth += 1
            elif ch == ")":
                depth = max(0, depth - 1)
            elif ch == ";" and depth == 0:
                statement = "".join(buffer).strip()
                if statement:
                    yield statement, start_line or line_number
                buffer = []
                start_line = None
                i += 1
                continue

            if start_line is None and not ch.isspace():
                start_line = line_number
            buffer.append(ch)
            i += 1

    statement = "".join(buffer).strip()
    if statement:
        yield statement, start_line or 1


def parse_create_table(statement: str) -> Optional[TableShape]:
    match = CREATE_TABLE.match(statement)
    if not match:
        return None

    shape = TableShape(name=strip_identifier(match.group(1)))
    for part in split_top_level(match.group(2)):
        upper = part.upper()
        if upper.startswith(CONSTRAINT_PREFIXES):
            _parse_table_constraint(shape, part)
            continue

        column = COLUMN_DEFINITION.match(part)
        if not column:
            logger.debug(f"Unrecognized column definition in {shape.name}: {part}")
            continue

        modifiers = column.group(4) or ""
        upper_mod = modifiers.upper()
        default = None
        default_match = DEFAULT_VALUE.search(modifiers)
        if default_match:
            raw = default_match.group(1)
            default = None if raw.upper() == "NULL" else raw.strip("'\"")

        col_type = column.group(2).lower()
        shape.columns.append(ColumnShape(
            name=column.group(1),
            type=col_type,
            length=(column.group(3) or "").strip("() ") or None,
            nullable="NOT NULL" not in upper_mod and "PRIMARY KEY" not in upper_mod,
            default=default,
            auto_increment=(
                "AUTO_INCREMENT" in upper_mod or "AUTOINCREMENT" in upper_mod
                or col_type in ("serial", "bigserial", "smallserial")
            ),
            primary_key="PRIMARY KEY" in upper_mod,
            unsigned="UNSIGNED" in upper_mod,
        ))
        if "PRIMARY KEY" in upper_mod:
            shape.primary_key.append(column.group(1))
    return shape


def _constraint_columns(part: str) -> List[str]:
    match = re.search(r"\(([^)]*)\)", part)
    if not match:
        return []
    return [strip_identifier(c.split("(")[0]) for c in match.group(1).split(",") if c.strip()]


def _parse_table_constraint(shape: TableShape, part: str):
    upper = part.upper()
    columns = _constraint_columns(part)
    if "PRIMARY KEY" in upper:
        for name in columns:
            if name not in shape.primary_key:
                shape.primary_key.append(name)
        for column in shape.columns:
            if column.name in columns:
                column.primary_key = True
                column.nullable = False
    elif "FOREIGN KEY" in upper:
        reference = re.search(rf"REFERENCES\s+({_IDENT})", part, re.IGNORECASE)
        shape.indexes.append({
            "type": "foreign",
            "columns": columns,
            "references": strip_identifier(reference.group(1)) if reference else None,
        })
    elif upper.startswith(("UNIQUE", "KEY", "INDEX", "FULLTEXT", "SPATIAL")) or "UNIQUE" in upper:
        name_match = re.match(
            r"^(?:UNIQUE\s+)?(?:FULLTEXT\s+|SPATIAL\s+)?(?:KEY|INDEX)?\s*([`\"]?[\w$]+[`\"]?)?\s*\(",
            part,
            re.IGNORECASE,
        )
        shape.indexes.append({
            "type": "unique" if "UNIQUE" in upper else "index",
            "name": strip_identifier(name_match.group(1)) if name_match and name_match.group(1) else None,
            "columns": columns,
        })


def parse_value_tuples(text: str) -> Iterator[List[Optional[str]]]:
    """
    Decode a VALUES list into tuples of raw scalars.

    Quoted literals are unescaped; unquoted NULL becomes None; anything else
    is kept as its raw text. Parsing stops at the first top-level token that
    is not part of the tuple list (ON DUPLICATE KEY UPDATE, RETURNING, ...).
    """
    depth = 0
    quote: Optional[str] = None
    values: List[Optional[str]] = []
    token: List[str] = []
    quoted = False
    i = 0
    length = len(text)

    def finish_value():
        raw = "".join(token)
        if quoted:
            values.append(raw)
        else:
            raw = raw.strip()
            values.append(None if raw.upper() == "NULL" else raw)

    while i < length:
        ch = text[i]

        if quote:
            if ch == "\\" and i + 1 < length:
                token.append(ESCAPES.get(text[i + 1], text[i + 1]))
                i += 2
                continue
            if ch == quote:
                if i + 1 < length and text[i + 1] == quote:
                    token.append(quote)
                    i += 2
                    continue
                quote = None
                i += 1
                continue
            token.append(ch)
            i += 1
            continue

        if depth == 0:
            if ch == "(":
                depth = 1
                values, token, quoted = [], [], False
            elif not (ch.isspace() or ch == ","):
                break
            i += 1
            continue

        if ch in ("'", '"') and depth == 1 and not "".join(token).strip():
            quote = ch
            quoted = True
            token = []
        elif ch in ("'", '"'):
            # Literal inside an expression such as CONCAT('a', 'b'): keep raw
            end = i + 1
            while end < length and text[end] != ch:
                end += 2 if text[end] == "\\" else 1
            token.append(text[i:end + 1])
            i = end + 1
            continue
        elif ch == "(":
            depth += 1
            token.append(ch)
        elif ch == ")":
            depth -= 1
            if depth == 0:
                finish_value()
                yield values
                values, token, quoted = [], [], False
            else:
                token.append(ch)
        elif ch == "," and depth == 1:
            finish_value()
            token, quoted = [], False
        elif not (quoted and ch.isspace()):
            token.append(ch)
        i += 1

    if depth != 0 or quote:
        raise ValueError("Unterminated value tuple")


class RelationalDecoder(Decoder):
    """
    Decode INSERT value tuples from a SQL dump.

    Options:
        table: Only yield records for this table
    """

    kind = SourceKind.RELATIONAL

    def _open_stream(self, handle: DecoderHandle) -> TextIO:
        encoding = handle.options.get("encoding", self.settings.SOURCE_ENCODING)
        return handle.track(open(handle.source, "r", encoding=encoding, errors="replace"))

    def table_shapes(self, handle: DecoderHandle) -> Dict[str, TableShape]:
        """CREATE TABLE declarations seen so far"""
        return dict(handle.state.setdefault("tables", {}))

    def _wanted(self, handle: DecoderHandle, table: str) -> bool:
        wanted = handle.options.get("table")
        return wanted is None or wanted == table

    def _prepare(self, handle: DecoderHandle):
        handle.state["tables"] = {}
        encoding = handle.options.get("encoding", self.settings.SOURCE_ENCODING)

        # Bounded look-ahead so header names are known before iteration
        with open(handle.source, "r", encoding=encoding, errors="replace") as stream:
            for index, (statement, _) in enumerate(iter_statements(stream)):
                if index >= PRESCAN_STATEMENT_LIMIT:
                    break
                shape = parse_create_table(statement)
                if shape and self._wanted(handle, shape.name):
                    handle.state["tables"][shape.name] = shape
                    handle.state.setdefault("table", shape.name)
                    for name in shape.column_names:
                        handle.add_header(name)
                    break
                insert = INSERT_INTO.match(statement)
                if insert and self._wanted(handle, strip_identifier(insert.group(1))):
                    handle.state.setdefault("table", strip_identifier(insert.group(1)))
                    if insert.group(2):
                        for name in insert.group(2).split(","):
                            handle.add_header(strip_identifier(name))
                    break

    def _columns_for(self, handle: DecoderHandle, table: str, explicit: Optional[str], width: int) -> List[str]:
        if explicit:
            columns = [strip_identifier(c) for c in explicit.split(",") if c.strip()]
        else:
            shape = handle.state["tables"].get(table)
            columns = shape.column_names if shape else []

        if len(columns) < width:
            columns = columns + [f"column_{i}" for i in range(len(columns) + 1, width + 1)]
        return columns

    def _iter_rows(self, handle: DecoderHandle) -> Iterator[RawRow]:
        source = str(handle.source)
        stream = self._open_stream(handle)

        for statement, line in iter_statements(stream):
            shape = parse_create_table(statement)
            if shape:
                handle.state["tables"][shape.name] = shape
                continue

            insert = INSERT_INTO.match(statement)
            if not insert:
                continue

            table = strip_identifier(insert.group(1))
            if not self._wanted(handle, table):
                continue
            if "table" not in handle.state:
                handle.state["table"] = table

            try:
                tuples = list(parse_value_tuples(insert.group(3)))
            except ValueError as e:
                raise DecodeError(
                    f"Malformed INSERT values for {table} in {source}",
                    context={"source": source, "line_number": line, "table": table},
                    original_exception=e
                )

            for index, values in enumerate(tuples):
                columns = self._columns_for(handle, table, insert.group(2), len(values))
                if len(values) != len(columns):
                    logger.debug(
                        f"Tuple width {len(values)} differs from {len(columns)} columns "
                        f"for {table} at line {line}"
                    )
                if table == handle.state["table"]:
                    for name in columns:
                        handle.add_header(name)

                row = {name: (values[i] if i < len(values) else None) for i, name in enumerate(columns)}
                provenance = {"source": source, "table": table, "line": line, "tuple": index}
                yield row, provenance
