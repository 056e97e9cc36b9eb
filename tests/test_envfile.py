"""
Dotenv variable file tests.
"""

import stat

import pytest

from composehost.envfile import (
    dump_env_text,
    load_env_file_if_exists,
    parse_env_text,
    write_env_file,
)
from composehost.errors import ParseError


class TestParseEnvText:
    def test_plain_quoted_and_exported_values(self):
        text = (
            "# comment\n"
            "\n"
            "A=1\n"
            'B="x y" # trailing comment\n'
            "export C='lit $x'\n"
            "D=abc # note\n"
            "E=a#b\n"
            "F=\n"
        )

        values = parse_env_text(text)

        assert values == {"A": "1", "B": "x y", "C": "lit $x", "D": "abc", "E": "a#b", "F": ""}

    def test_preserves_file_order(self):
        values = parse_env_text("Z=1\nA=2\nM=3\n")

        assert list(values) == ["Z", "A", "M"]

    def test_double_quote_escapes(self):
        values = parse_env_text('KEY="line1\\nline2 \\"q\\""\n')

        assert values["KEY"] == 'line1\nline2 "q"'

    def test_values_are_not_interpolated(self):
        values = parse_env_text("A=1\nB=${A}\n")

        assert values["B"] == "${A}"


class TestParseEnvErrors:
    def test_missing_equals_reports_line_and_column(self):
        with pytest.raises(ParseError) as exc:
            parse_env_text("A=1\nNOVALUE\n", ".env")

        assert exc.value.line == 2
        assert exc.value.column == 8
        assert ".env:2:8" in str(exc.value)

    def test_unterminated_quote(self):
        with pytest.raises(ParseError, match="unterminated") as exc:
            parse_env_text('F="abc\n', ".env")

        assert exc.value.line == 1
        assert exc.value.column == 3

    def test_duplicate_key(self):
        with pytest.raises(ParseError, match="duplicate variable 'A'"):
            parse_env_text("A=1\nA=2\n")

    def test_invalid_name(self):
        with pytest.raises(ParseError, match="invalid variable name"):
            parse_env_text("1ABC=x\n")

    def test_text_after_quoted_value(self):
        with pytest.raises(ParseError, match="unexpected text"):
            parse_env_text('A="x" y\n')


class TestDumpAndWrite:
    def test_dump_quotes_only_when_needed(self):
        text = dump_env_text({"PLAIN": "abc", "SPACED": "a b", "QUOTE": 'say "hi"'})

        assert "PLAIN=abc\n" in text
        assert 'SPACED="a b"\n' in text
        assert parse_env_text(text) == {"PLAIN": "abc", "SPACED": "a b", "QUOTE": 'say "hi"'}

    def test_write_env_file_is_owner_only(self, tmp_path):
        path = tmp_path / "secrets.env"
        write_env_file(path, {"DB_PASSWORD": "hunter2"}, header="generated")

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert path.read_text().startswith("# generated\n")
        assert load_env_file_if_exists(path) == {"DB_PASSWORD": "hunter2"}

    def test_missing_file_is_empty(self, tmp_path):
        assert load_env_file_if_exists(tmp_path / ".env") == {}

    def test_non_utf8_file(self, tmp_path):
        path = tmp_path / ".env"
        path.write_bytes(b"A=\xff\n")

        with pytest.raises(ParseError, match="not valid UTF-8"):
            load_env_file_if_exists(path)
