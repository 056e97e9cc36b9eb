#!/usr/bin/env python3
"""
Variable interpolation for compose documents.

Placeholders are substituted textually in string values only; mapping keys
are left alone. Supported forms:

    $NAME  ${NAME}        value of NAME, MissingVariable when absent
    ${NAME:-fallback}     fallback when NAME is unset or empty
    ${NAME-fallback}      fallback when NAME is unset
    ${NAME:?message}      MissingVariable(message) when NAME is unset or empty
    ${NAME?message}       MissingVariable(message) when NAME is unset
    $$                    a literal dollar sign

Fallback text is used verbatim: it is not interpolated again and no
expression inside a placeholder is ever evaluated.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterator, Mapping, NamedTuple

from .errors import MissingVariable, ParseError

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(
    r"""
    \$(?:
        (?P<escaped>\$)
      | (?P<named>[A-Za-z_][A-Za-z0-9_]*)
      | \{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-?])(?P<arg>[^}]*))?\}
      | (?P<invalid>)
    )
    """,
    re.VERBOSE,
)


class Reference(NamedTuple):
    name: str
    location: str
    has_fallback: bool


def _location(source: str, path: str) -> str:
    return f"{source}:{path}" if path else source


def _invalid(text: str, match: re.Match, source: str, path: str) -> ParseError:
    snippet = text[match.start():match.start() + 12]
    return ParseError(f"invalid placeholder {snippet!r} in value at {path or '<root>'}", source)


def interpolate_string(text: str, variables: Mapping[str, str], source: str = "<document>", path: str = "") -> str:
    """Substitute placeholders in a single string value."""

    def _replace(match: re.Match) -> str:
        if match.group('escaped') is not None:
            return '$'

        name = match.group('named') or match.group('braced')
        if name is None:
            raise _invalid(text, match, source, path)

        op = match.group('op')
        arg = match.group('arg')
        value = variables.get(name)

        if op is None:
            if value is None:
                raise MissingVariable(name, _location(source, path))
            return value

        unset = value is None
        empty = unset or value == ""
        triggered = empty if op.startswith(':') else unset

        if op.endswith('-'):
            return arg if triggered else value

        # ':?' and '?' make the variable mandatory with a custom message
        if triggered:
            raise MissingVariable(name, _location(source, path), detail=arg or None)
        return value

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def interpolate(document: Any, variables: Mapping[str, str], source: str = "<document>", _path: str = "") -> Any:
    """
    Return a copy of ``document`` with every string value interpolated.

    Raises:
        MissingVariable: a required variable is absent (names key and location)
        ParseError: a malformed placeholder
    """
    if isinstance(document, dict):
        return {
            key: interpolate(value, variables, source, f"{_path}.{key}" if _path else str(key))
            for key, value in document.items()
        }
    if isinstance(document, list):
        return [
            interpolate(item, variables, source, f"{_path}[{index}]")
            for index, item in enumerate(document)
        ]
    if isinstance(document, str):
        return interpolate_string(document, variables, source, _path)
    return document


def iter_references(document: Any, source: str = "<document>", _path: str = "") -> Iterator[Reference]:
    """Yield every placeholder reference in ``document`` (escaped ``$$`` excluded)."""
    if isinstance(document, dict):
        for key, value in document.items():
            yield from iter_references(value, source, f"{_path}.{key}" if _path else str(key))
        return
    if isinstance(document, list):
        for index, item in enumerate(document):
            yield from iter_references(item, source, f"{_path}[{index}]")
        return
    if not isinstance(document, str):
        return

    for match in PLACEHOLDER_PATTERN.finditer(document):
        if match.group('escaped') is not None:
            continue
        name = match.group('named') or match.group('braced')
        if name is None:
            raise _invalid(document, match, source, _path)
        op = match.group('op')
        yield Reference(name, _location(source, _path), bool(op and op.endswith('-')))


def find_references(document: Any, source: str = "<document>") -> set[str]:
    return {ref.name for ref in iter_references(document, source)}


def has_placeholders(document: Any) -> bool:
    """True when any unescaped placeholder marker remains in ``document``."""
    try:
        return next(iter_references(document), None) is not None
    except ParseError:
        return True
