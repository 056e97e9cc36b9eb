#!/usr/bin/env python3
"""
File helpers shared by every reader and writer of project files.

Reads turn decoding and OS failures into ParseError so the CLI reports them
on one line. Writes go through a temp file and a rename, so a failed run
never leaves a partial file behind.
"""

from __future__ import annotations

import os
from pathlib import Path

from .errors import OutputError, ParseError


def read_text(path: Path) -> str:
    """Read a UTF-8 text file; undecodable or unreadable files raise ParseError."""
    path = Path(path)
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"not valid UTF-8 ({e.reason} at byte {e.start})", str(path)) from e
    except OSError as e:
        raise ParseError(f"cannot read file: {e.strerror or e}", str(path)) from e


def write_text_atomic(path: Path, text: str, mode: int = 0o600) -> None:
    """
    Write ``text`` to ``path`` via a temp file and rename.

    Raises:
        OutputError: the file could not be written; no temp file is left
    """
    path = Path(path)
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException as e:
        if tmp.exists():
            tmp.unlink()
        if isinstance(e, OSError):
            raise OutputError(f"cannot write {path}: {e.strerror or e}") from e
        raise
