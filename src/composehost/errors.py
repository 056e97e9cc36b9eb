"""
Error taxonomy for composehost.

Every error is terminal for the current resolution run. Each carries the
pipeline stage it was raised in so the CLI can print a single line of the
form ``<stage>: <message>``.
"""

from __future__ import annotations

from typing import Optional


class ComposeHostError(Exception):
    """Base class for all resolution failures."""

    stage = "composehost"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.stage}: {self.message}"


class SettingsError(ComposeHostError):
    stage = "settings"


class ParseError(ComposeHostError):
    """Malformed document. Line and column are 1-based when known."""

    stage = "parse"

    def __init__(
        self,
        message: str,
        source: str,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ):
        self.source = source
        self.line = line
        self.column = column
        location = source
        if line is not None:
            location = f"{source}:{line}"
            if column is not None:
                location = f"{location}:{column}"
        super().__init__(f"{location}: {message}")


class MissingVariable(ComposeHostError):
    stage = "interpolate"

    def __init__(self, key: str, location: str, detail: Optional[str] = None):
        self.key = key
        self.location = location
        message = f"variable '{key}' is not set (at {location})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class HostNotFoundError(ComposeHostError):
    stage = "resolve"

    def __init__(self, host: str, hosts_dir: str, available: Optional[list[str]] = None):
        self.host = host
        self.hosts_dir = hosts_dir
        self.available = list(available or [])
        message = f"no host directory for '{host}' under {hosts_dir}"
        if self.available:
            message = f"{message} (known hosts: {', '.join(self.available)})"
        super().__init__(message)


class KeyNotFoundError(ComposeHostError):
    stage = "secrets"


class DecryptionError(ComposeHostError):
    stage = "secrets"


class RecipientError(ComposeHostError):
    stage = "secrets"


class ConflictError(ComposeHostError):
    stage = "merge"

    def __init__(self, path: str, base_kind: str, override_kind: str, source: Optional[str] = None):
        self.path = path
        self.base_kind = base_kind
        self.override_kind = override_kind
        message = f"cannot merge {override_kind} over {base_kind} at '{path}'"
        if source:
            message = f"{message} ({source})"
        super().__init__(message)


class DocumentNotFoundError(ComposeHostError):
    stage = "resolve"

    def __init__(self, path: str, role: str):
        self.path = path
        self.role = role
        super().__init__(f"{role} not found: {path}")


class EngineError(ComposeHostError):
    """docker compose is missing or could not be started."""

    stage = "compose"


class OutputError(ComposeHostError):
    """An output file could not be written."""

    stage = "output"
