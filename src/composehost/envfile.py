#!/usr/bin/env python3
"""
Dotenv variable files (.env, secrets.env).

Supported syntax:
- ``KEY=value`` and ``export KEY=value``
- blank lines and ``#`` comments, inline `` # comment`` after unquoted values
- ``"double quoted"`` values with ``\\n``, ``\\t``, ``\\"`` and ``\\\\`` escapes
- ``'single quoted'`` values, taken literally

Values are never interpolated; a variable file is data, not a template.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .errors import ParseError
from .file_utils import read_text, write_text_atomic

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\", "$": "$"}

_NEEDS_QUOTES = re.compile(r"[\s#'\"\\]")


def _parse_double_quoted(body: str, source: str, line_num: int, column: int) -> tuple[str, str]:
    """Parse a double-quoted value; returns (value, remainder after closing quote)."""
    chars: list[str] = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            nxt = body[index + 1]
            chars.append(_ESCAPES.get(nxt, "\\" + nxt))
            index += 2
            continue
        if char == '"':
            return "".join(chars), body[index + 1:]
        chars.append(char)
        index += 1
    raise ParseError("unterminated double-quoted value", source, line_num, column)


def _check_trailing(remainder: str, source: str, line_num: int, column: int) -> None:
    stripped = remainder.strip()
    if stripped and not stripped.startswith("#"):
        raise ParseError(f"unexpected text after quoted value: {stripped!r}", source, line_num, column)


def parse_env_text(text: str, source: str = "<string>") -> dict[str, str]:
    """
    Parse dotenv text into an ordered mapping.

    Raises:
        ParseError: on malformed lines, unterminated quotes or duplicate keys
    """
    values: dict[str, str] = {}
    seen_at: dict[str, int] = {}

    for line_num, raw_line in enumerate(text.splitlines(), 1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        indent = len(raw_line) - len(raw_line.lstrip())
        if line.startswith("export "):
            rest = line[len("export "):].lstrip()
            indent += len(line) - len(rest)
            line = rest

        if "=" not in line:
            raise ParseError(f"expected KEY=VALUE, got {line!r}", source, line_num, indent + len(line) + 1)

        key, raw_value = line.split("=", 1)
        key = key.strip()
        if not KEY_PATTERN.match(key):
            raise ParseError(f"invalid variable name {key!r}", source, line_num, indent + 1)

        if key in seen_at:
            raise ParseError(
                f"duplicate variable '{key}' (first defined on line {seen_at[key]})",
                source, line_num, indent + 1,
            )

        value_column = indent + len(line.split("=", 1)[0]) + 2
        value = raw_value.strip()
        value_column += len(raw_value) - len(raw_value.lstrip())

        if value.startswith('"'):
            value, remainder = _parse_double_quoted(value[1:], source, line_num, value_column)
            _check_trailing(remainder, source, line_num, value_column)
        elif value.startswith("'"):
            closing = value.find("'", 1)
            if closing == -1:
                raise ParseError("unterminated single-quoted value", source, line_num, value_column)
            _check_trailing(value[closing + 1:], source, line_num, value_column)
            value = value[1:closing]
        else:
            comment = re.search(r"\s#", value)
            if comment:
                value = value[:comment.start()].rstrip()

        values[key] = value
        seen_at[key] = line_num

    return values


def load_env_file(path: Path) -> dict[str, str]:
    """Load a dotenv file. Unreadable or non-UTF-8 files raise ParseError."""
    text = read_text(path)
    values = parse_env_text(text, str(path))
    logger.debug(f"Loaded {len(values)} variable(s) from {path}")
    return values


def load_env_file_if_exists(path: Path) -> dict[str, str]:
    if not Path(path).is_file():
        logger.debug(f"Variable file not present: {path}")
        return {}
    return load_env_file(path)


def format_env_value(value: str) -> str:
    if value == "" or not _NEEDS_QUOTES.search(value):
        return value
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
        .replace("\r", "\\r")
    )
    return f'"{escaped}"'


def dump_env_text(values: dict[str, str], header: str | None = None) -> str:
    lines = []
    if header:
        lines.extend(f"# {line}" if line else "#" for line in header.splitlines())
    for key, value in values.items():
        lines.append(f"{key}={format_env_value(value)}")
    return "\n".join(lines) + "\n"


def write_env_file(path: Path, values: dict[str, str], header: str | None = None) -> None:
    """Write a dotenv file atomically with owner-only permissions."""
    write_text_atomic(path, dump_env_text(values, header=header), mode=0o600)
