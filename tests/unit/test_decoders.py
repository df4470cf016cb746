"""
Unit tests for source decoders
"""

import json
import pytest
from core.config import Settings
from core.exceptions import DecodeError, SourceUnreadable
from migration.decoders import open_decoder, detect_source_kind
from migration.decoders.delimiter import detect_delimiter, is_consistent, score_delimiter
from migration.decoders.markup import MarkupDecoder
from migration.decoders.relational import (
    RelationalDecoder,
    iter_statements,
    parse_create_table,
    parse_value_tuples,
)
from migration.decoders.tabular import TabularDecoder, looks_like_header, normalize_headers
from models.base import SourceKind
import io


class TestDelimiterDetection:
    """Test delimiter scoring and detection"""

    def test_consistent_delimiter_scores_count_times_ten(self):
        """Test zero-variance occurrences score count * 10"""
        assert score_delimiter(["a,b,c", "1,2,3"], ",") == (20, 2.0)

    def test_absent_delimiter_scores_zero(self):
        """Test a delimiter that never occurs scores zero"""
        assert score_delimiter(["abc", "def"], ";") == (0, 0.0)

    def test_detect_semicolon(self):
        """Test semicolon separated lines"""
        assert detect_delimiter(["id;name;city", "1;Ann;Oslo", "2;Bob;Rome"]) == ";"

    def test_detect_tab(self):
        """Test tab separated lines"""
        assert detect_delimiter(["id\tname", "1\tAnn", "2\tBob"]) == "\t"

    def test_quoted_delimiters_ignored(self):
        """Test commas inside quoted cells do not win over the real delimiter"""
        lines = ['name;note', '"Ann";"a, b, c"', '"Bob";"d, e"']
        assert detect_delimiter(lines) == ";"

    def test_consistent_semicolon_beats_varying_commas(self):
        """Test a steady semicolon wins over more numerous but uneven unquoted commas"""
        lines = ["id;tags", "1;a,b,c,d,e,f", "2;a,b,c,d,e", "3;a,b,c,d,e,f", "4;a,b,c,d,e"]
        assert detect_delimiter(lines) == ";"

    def test_delimiter_missing_from_a_line_is_not_consistent(self):
        """Test a candidate absent from some lines never counts as consistent"""
        lines = ["id,name,at", "1,Ann,12:30", "2,Bob,13:45"]
        assert is_consistent(lines, ",") is True
        assert is_consistent(lines, ":") is False
        assert detect_delimiter(lines) == ","

    def test_fallback_to_comma(self):
        """Test comma fallback when nothing scores above the minimum"""
        assert detect_delimiter(["single", "values"]) == ","


class TestHeaderHeuristics:
    """Test header row detection and normalization"""

    def test_type_contrast_detects_header(self):
        """Test string header above numeric data"""
        assert looks_like_header(["Amount", "Price"], ["10", "2.5"]) is True

    def test_data_row_is_not_header(self):
        """Test a numeric/email row is treated as data"""
        assert looks_like_header(["1", "alice", "alice@example.com"], ["2", "bob", "bob@example.com"]) is False

    def test_normalize_headers(self):
        """Test strip, lowercase, blanks and duplicates"""
        assert normalize_headers([" First Name ", "", "email", "Email"]) == [
            "first_name", "column_2", "email", "email_2"
        ]


class TestTabularDecoder:
    """Test CSV/TSV decoding"""

    def test_reads_header_and_records(self, users_csv):
        """Test header detection and record values"""
        decoder = TabularDecoder()
        handle = decoder.open(users_csv)

        assert decoder.header_names(handle) == ["id", "name", "email", "status"]

        records = list(decoder.records(handle))
        assert len(records) == 25
        assert records[0].values == {
            "id": "1",
            "name": "User 1",
            "email": "user1@example.com",
            "status": "active",
        }
        assert records[0].position == 0
        assert records[0].provenance["row"] == 2
        assert records[-1].position == 24

    def test_generated_headers_without_header_row(self, write_file):
        """Test column_N names when the first row is data"""
        path = write_file("plain.csv", "1,alice,alice@example.com\n2,bob,bob@example.com\n")
        decoder = TabularDecoder()
        handle = decoder.open(path)

        assert decoder.header_names(handle) == ["column_1", "column_2", "column_3"]
        records = list(decoder.records(handle))
        assert len(records) == 2
        assert records[0].values["column_2"] == "alice"

    def test_semicolon_source(self, write_file):
        """Test non-comma delimiter is detected"""
        path = write_file("people.csv", "name;city\nAnn;Oslo\nBob;Rome\n")
        decoder = TabularDecoder()
        handle = decoder.open(path)

        records = list(decoder.records(handle))
        assert handle.state["delimiter"] == ";"
        assert [r.values["city"] for r in records] == ["Oslo", "Rome"]

    def test_short_rows_padded(self, write_file):
        """Test missing trailing cells become None"""
        path = write_file("ragged.csv", "a,b,c\n1,2\n3,4,5\n")
        decoder = TabularDecoder()
        handle = decoder.open(path)

        records = list(decoder.records(handle))
        assert records[0].values == {"a": "1", "b": "2", "c": None}
        assert records[1].values == {"a": "3", "b": "4", "c": "5"}

    def test_rows_beyond_tolerance_skipped(self, write_file):
        """Test rows missing more cells than the tolerance are skipped"""
        path = write_file("ragged.csv", "a,b,c\n1,2\n3,4,5\n")
        decoder = TabularDecoder()
        handle = decoder.open(path, column_tolerance=0)

        records = list(decoder.records(handle))
        assert [r.values["a"] for r in records] == ["3"]
        assert handle.skipped_rows == 1

    def test_records_are_single_pass(self, users_csv):
        """Test a consumed handle cannot be read again"""
        decoder = TabularDecoder()
        handle = decoder.open(users_csv)
        list(decoder.records(handle))

        with pytest.raises(DecodeError):
            decoder.records(handle)

    def test_skip_resumes_at_position(self, users_csv):
        """Test skip() yields records from the given position"""
        decoder = TabularDecoder()
        handle = decoder.open(users_csv)

        records = list(decoder.skip(handle, 20))
        assert [r.position for r in records] == [20, 21, 22, 23, 24]
        assert records[0].values["id"] == "21"

    def test_count(self, users_csv):
        """Test full-pass record count"""
        assert TabularDecoder().count(users_csv) == 25

    def test_empty_file(self, write_file):
        """Test an empty source yields nothing"""
        path = write_file("empty.csv", "")
        decoder = TabularDecoder()
        handle = decoder.open(path)
        assert list(decoder.records(handle)) == []

    def test_missing_source(self, tmp_path):
        """Test SourceUnreadable for a missing file"""
        with pytest.raises(SourceUnreadable) as exc_info:
            TabularDecoder().open(tmp_path / "nope.csv")
        assert exc_info.value.context["reason"] == "missing"

    def test_oversized_source(self, users_csv):
        """Test SourceUnreadable when the size limit is exceeded"""
        with pytest.raises(SourceUnreadable) as exc_info:
            TabularDecoder().open(users_csv, max_bytes=10)
        assert exc_info.value.context["reason"] == "oversized"

    def test_size_limit_from_settings(self, users_csv):
        """Test MAX_SOURCE_BYTES applies when no option is given"""
        decoder = TabularDecoder(settings=Settings(MAX_SOURCE_BYTES=10))
        with pytest.raises(SourceUnreadable):
            decoder.open(users_csv)


class TestMarkupDecoder:
    """Test XML decoding"""

    XML = (
        '<?xml version="1.0"?>\n'
        '<catalog xmlns="urn:test">\n'
        '  <product sku="A-1"><name>Lamp</name><price>19.99</price><tag>home</tag></product>\n'
        '  <product sku="B-2"><name>Desk</name><price>120.00</price><tag>office</tag><tag>wood</tag></product>\n'
        '  <product sku="C-3"><name>Chair</name><price>45.50</price><color>red</color></product>\n'
        '</catalog>\n'
    )

    def test_auto_detects_record_element(self, write_file):
        """Test the repeating element with leaf children becomes the record"""
        path = write_file("catalog.xml", self.XML)
        decoder = MarkupDecoder()
        handle = decoder.open(path)

        assert handle.state["record_tag"] == "product"
        records = list(decoder.records(handle))
        assert len(records) == 3
        assert records[0].values["sku"] == "A-1"
        assert records[0].values["name"] == "Lamp"
        assert records[0].values["price"] == "19.99"

    def test_repeated_children_become_json_array(self, write_file):
        """Test repeated child tags are collected into a JSON array string"""
        path = write_file("catalog.xml", self.XML)
        decoder = MarkupDecoder()
        handle = decoder.open(path)

        records = list(decoder.records(handle))
        assert json.loads(records[1].values["tag"]) == ["office", "wood"]

    def test_field_order_extends_with_new_fields(self, write_file):
        """Test fields first seen later are appended to the header order"""
        path = write_file("catalog.xml", self.XML)
        decoder = MarkupDecoder()
        handle = decoder.open(path)

        records = list(decoder.records(handle))
        assert decoder.header_names(handle)[:4] == ["sku", "name", "price", "tag"]
        assert "color" in decoder.header_names(handle)
        assert records[2].values["color"] == "red"

    def test_explicit_record_tag(self, write_file):
        """Test record_tag option overrides detection"""
        path = write_file("catalog.xml", self.XML)
        decoder = MarkupDecoder()
        handle = decoder.open(path, record_tag="name")

        records = list(decoder.records(handle))
        assert [r.values["name"] for r in records] == ["Lamp", "Desk", "Chair"]

    def test_external_entities_not_resolved(self, write_file, tmp_path):
        """Test external entities are not expanded by default"""
        secret = tmp_path / "secret.txt"
        secret.write_text("TOP SECRET")
        xml = (
            '<?xml version="1.0"?>\n'
            f'<!DOCTYPE items [<!ENTITY xxe SYSTEM "file://{secret}">]>\n'
            '<items><item><value>&xxe;</value></item><item><value>plain</value></item></items>\n'
        )
        path = write_file("xxe.xml", xml)
        decoder = MarkupDecoder()
        handle = decoder.open(path)

        values = [r.values.get("value") for r in decoder.records(handle)]
        assert all("TOP SECRET" not in (v or "") for v in values)

    def test_malformed_document(self, write_file):
        """Test DecodeError for broken markup"""
        path = write_file("broken.xml", "<items><item><a>1</a></item><item><a>2</item></items>")
        decoder = MarkupDecoder()

        with pytest.raises(DecodeError):
            handle = decoder.open(path)
            list(decoder.records(handle))


class TestRelationalDecoder:
    """Test SQL dump decoding"""

    DUMP = (
        "-- dump header\n"
        "/* block comment; with semicolon */\n"
        "CREATE TABLE IF NOT EXISTS `users` (\n"
        "  `id` int(11) NOT NULL AUTO_INCREMENT,\n"
        "  `name` varchar(100) NOT NULL,\n"
        "  `bio` text DEFAULT NULL,\n"
        "  PRIMARY KEY (`id`),\n"
        "  UNIQUE KEY `uniq_name` (`name`)\n"
        ") ENGINE=InnoDB;\n"
        "INSERT INTO `users` VALUES (1,'Ann','likes; semicolons'),(2,'O''Brien',NULL);\n"
        "# trailing comment\n"
        "INSERT INTO `users` (`id`, `name`) VALUES (3, 'Line\\nBreak');\n"
        "INSERT INTO `orders` VALUES (10, 1, 99.5);\n"
    )

    def test_statement_splitting_respects_quotes_and_comments(self):
        """Test semicolons in literals and comments do not split statements"""
        statements = [s for s, _ in iter_statements(io.StringIO(self.DUMP))]
        assert len(statements) == 4
        assert statements[0].upper().startswith("CREATE TABLE")
        assert "likes; semicolons" in statements[1]

    def test_parse_create_table(self):
        """Test column shapes, primary key and indexes"""
        statement = next(iter_statements(io.StringIO(self.DUMP)))[0]
        shape = parse_create_table(statement)

        assert shape.name == "users"
        assert shape.column_names == ["id", "name", "bio"]
        assert shape.primary_key == ["id"]
        assert shape.columns[0].auto_increment is True
        assert shape.columns[0].nullable is False
        assert shape.columns[2].nullable is True
        assert shape.indexes[0]["type"] == "unique"
        assert shape.indexes[0]["columns"] == ["name"]

    def test_parse_value_tuples(self):
        """Test escapes, doubled quotes, NULL and nested parentheses"""
        tuples = list(parse_value_tuples("(1,'a\\'b','x''y',NULL),(2,CONCAT('p', 'q'),'',  3.5 )"))
        assert tuples[0] == ["1", "a'b", "x'y", None]
        assert tuples[1] == ["2", "CONCAT('p', 'q')", "", "3.5"]

    def test_unterminated_tuple(self):
        """Test ValueError for an unterminated tuple"""
        with pytest.raises(ValueError):
            list(parse_value_tuples("(1,'open"))

    def test_records_use_declared_column_order(self, write_file):
        """Test tuples map onto CREATE TABLE column order"""
        path = write_file("dump.sql", self.DUMP)
        decoder = RelationalDecoder()
        handle = decoder.open(path, table="users")

        records = list(decoder.records(handle))
        assert decoder.header_names(handle) == ["id", "name", "bio"]
        assert [r.values["name"] for r in records] == ["Ann", "O'Brien", "Line\nBreak"]
        assert records[0].values["bio"] == "likes; semicolons"
        assert records[1].values["bio"] is None
        assert records[0].provenance["table"] == "users"
        assert records[0].provenance["tuple"] == 0

    def test_explicit_column_list(self, write_file):
        """Test an explicit INSERT column list wins over the declared order"""
        path = write_file("dump.sql", self.DUMP)
        decoder = RelationalDecoder()
        handle = decoder.open(path, table="users")

        third = list(decoder.records(handle))[2]
        assert third.values == {"id": "3", "name": "Line\nBreak"}

    def test_undeclared_table_gets_generated_columns(self, write_file):
        """Test column_N names without a CREATE TABLE"""
        path = write_file("dump.sql", self.DUMP)
        decoder = RelationalDecoder()
        handle = decoder.open(path, table="orders")

        records = list(decoder.records(handle))
        assert records[0].values == {"column_1": "10", "column_2": "1", "column_3": "99.5"}

    def test_table_shapes(self, write_file):
        """Test declared shapes are exposed on the handle"""
        path = write_file("dump.sql", self.DUMP)
        decoder = RelationalDecoder()
        handle = decoder.open(path)

        assert "users" in decoder.table_shapes(handle)


class TestDecoderSelection:
    """Test extension based decoder selection"""

    def test_detect_source_kind(self):
        """Test extension mapping"""
        assert detect_source_kind("a.csv") == SourceKind.TABULAR
        assert detect_source_kind("a.XML") == SourceKind.MARKUP
        assert detect_source_kind("a.sql") == SourceKind.RELATIONAL
        assert detect_source_kind("a.bin") == SourceKind.UNKNOWN

    def test_open_decoder(self):
        """Test matching decoder class and unsupported sources"""
        assert isinstance(open_decoder("users.tsv"), TabularDecoder)
        assert isinstance(open_decoder("dump.sql"), RelationalDecoder)
        with pytest.raises(SourceUnreadable):
            open_decoder("image.png")
