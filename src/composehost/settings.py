#!/usr/bin/env python3
"""
Project settings.

Settings templates are rendered with Jinja2 and parsed as TOML, then merged
key by key in this order (later wins):

1. <root>/composehost.defaults.toml.j2     committed defaults
2. <root>/composehost.toml.j2              local overrides
3. <root>/hosts/<host>/composehost.toml.j2 host overrides

Every file is optional. Templates see ``env`` (process environment),
``host`` (host identity) and ``root`` (project root). Settings files are only
read here, never created or rewritten.
"""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .config_constants import (
    BASE_DOCUMENT,
    BASE_VARIABLES,
    DEFAULT_ENCRYPTED_REGEX,
    ENV_KEY_FILE,
    ENV_ROOT,
    HOST_VARIABLES,
    HOSTS_DIR,
    KEYSTORE_DIR,
    OVERRIDE_DOCUMENT,
    PRIVATE_KEY_FILE,
    SECRETS_DOCUMENT,
    SECRETS_PLAINTEXT,
    SETTINGS_DEFAULTS,
    SETTINGS_OVERRIDES,
    get_plaintext_name,
)
from .errors import HostNotFoundError, ParseError, SettingsError
from .file_utils import read_text
from .loader import merge

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

_TOML_LOCATION = re.compile(r"\(at line (\d+), column (\d+)\)")


@dataclass(frozen=True)
class EncryptionRule:
    """Which keys are encrypted, and for whom, on hosts matching ``host_regex``."""

    host_regex: str
    encrypted_regex: str
    recipients: tuple[str, ...] = ()

    def applies_to(self, host: str) -> bool:
        return re.search(self.host_regex, host) is not None


@dataclass(frozen=True)
class ProjectSettings:
    root: Path
    base_document: str = BASE_DOCUMENT
    base_variables: str = BASE_VARIABLES
    hosts_dir: str = HOSTS_DIR
    log_level: str = "INFO"
    override_document: str = OVERRIDE_DOCUMENT
    host_variables: str = HOST_VARIABLES
    secrets_document: str = SECRETS_DOCUMENT
    secrets_plaintext: str = SECRETS_PLAINTEXT
    keystore: Path = Path(KEYSTORE_DIR)
    private_key: Path = Path(PRIVATE_KEY_FILE)
    encrypted_regex: str = DEFAULT_ENCRYPTED_REGEX
    rules: tuple[EncryptionRule, ...] = ()
    inject_services: tuple[str, ...] = ()
    sources: tuple[Path, ...] = field(default=(), compare=False)

    @property
    def hosts_path(self) -> Path:
        return self.root / self.hosts_dir

    def host_path(self, host: str) -> Path:
        return self.hosts_path / host

    def rule_for_host(self, host: str) -> EncryptionRule:
        for rule in self.rules:
            if rule.applies_to(host):
                return rule
        return EncryptionRule(host_regex=".*", encrypted_regex=self.encrypted_regex)

    def as_dict(self) -> dict:
        """Plain TOML-serializable view (used by ``composehost config``)."""
        return {
            "project": {
                "root": str(self.root),
                "base_document": self.base_document,
                "base_variables": self.base_variables,
                "hosts_dir": self.hosts_dir,
                "log_level": self.log_level,
            },
            "host": {
                "override_document": self.override_document,
                "variables": self.host_variables,
            },
            "secrets": {
                "document": self.secrets_document,
                "plaintext": self.secrets_plaintext,
                "keystore": str(self.keystore),
                "private_key": str(self.private_key),
                "encrypted_regex": self.encrypted_regex,
                "inject_services": list(self.inject_services),
                "rules": [
                    {
                        "host_regex": rule.host_regex,
                        "encrypted_regex": rule.encrypted_regex,
                        "recipients": list(rule.recipients),
                    }
                    for rule in self.rules
                ],
            },
        }


def find_project_root(start: Path) -> Path:
    """
    Locate the project root: $COMPOSEHOST_ROOT, else walk up from ``start`` to
    the first directory holding the settings defaults or a base document next
    to a hosts directory.
    """
    env_root = os.environ.get(ENV_ROOT)
    if env_root:
        return Path(env_root).resolve()

    current = Path(start).resolve()
    while True:
        if (current / SETTINGS_DEFAULTS).exists():
            return current
        if (current / BASE_DOCUMENT).exists() and (current / HOSTS_DIR).is_dir():
            return current
        if current.parent == current:
            break
        current = current.parent

    raise SettingsError(
        f"project root not found above {start} "
        f"({SETTINGS_DEFAULTS} or {BASE_DOCUMENT} with {HOSTS_DIR}/ missing). Use -C or {ENV_ROOT}."
    )


def render_jinja2(template_path: Path, context: dict) -> str:
    """Render a settings template; undefined names are an error."""
    from jinja2 import StrictUndefined, Template, TemplateError

    logger.debug(f"Rendering settings template: {template_path}")
    content = read_text(template_path)

    try:
        return Template(content, undefined=StrictUndefined, keep_trailing_newline=True).render(**context)
    except TemplateError as e:
        raise SettingsError(f"failed to render {template_path}: {e}") from e


def parse_toml_string(toml_text: str, source: str) -> dict:
    try:
        return tomllib.loads(toml_text)
    except tomllib.TOMLDecodeError as e:
        line = getattr(e, 'lineno', None)
        column = getattr(e, 'colno', None)
        message = getattr(e, 'msg', None) or str(e)
        if line is None:
            location = _TOML_LOCATION.search(str(e))
            if location:
                line, column = int(location.group(1)), int(location.group(2))
                message = _TOML_LOCATION.sub("", str(e)).strip()
        raise ParseError(f"TOML syntax error: {message}", source, line, column) from e


def render_settings_template(template_path: Path, context: dict) -> dict:
    return parse_toml_string(render_jinja2(template_path, context), str(template_path))


def _section(data: dict, name: str) -> dict:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise SettingsError(f"[{name}] must be a table")
    return value


def _str(section: dict, key: str, default: str, where: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value:
        raise SettingsError(f"{where}.{key} must be a non-empty string")
    return value


def _str_list(section: dict, key: str, where: str) -> tuple[str, ...]:
    value = section.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise SettingsError(f"{where}.{key} must be a list of strings")
    return tuple(value)


def _regex(value: str, where: str) -> str:
    try:
        re.compile(value)
    except re.error as e:
        raise SettingsError(f"{where} is not a valid regular expression: {e}") from e
    return value


def _parse_rules(secrets: dict) -> tuple[EncryptionRule, ...]:
    raw_rules = secrets.get('rules', [])
    if not isinstance(raw_rules, list):
        raise SettingsError("secrets.rules must be an array of tables")

    rules = []
    for index, raw in enumerate(raw_rules):
        where = f"secrets.rules[{index}]"
        if not isinstance(raw, dict):
            raise SettingsError(f"{where} must be a table")
        rules.append(EncryptionRule(
            host_regex=_regex(_str(raw, 'host_regex', '.*', where), f"{where}.host_regex"),
            encrypted_regex=_regex(
                _str(raw, 'encrypted_regex', secrets.get('encrypted_regex', DEFAULT_ENCRYPTED_REGEX), where),
                f"{where}.encrypted_regex",
            ),
            recipients=_str_list(raw, 'recipients', where),
        ))
    return tuple(rules)


def build_settings(root: Path, data: dict, sources: tuple[Path, ...] = ()) -> ProjectSettings:
    """Validate merged settings data into a ProjectSettings."""
    project = _section(data, 'project')
    host = _section(data, 'host')
    secrets = _section(data, 'secrets')

    log_level = _str(project, 'log_level', 'INFO', 'project').upper()
    if log_level not in LOG_LEVELS:
        raise SettingsError(f"project.log_level must be one of {', '.join(LOG_LEVELS)}")

    keystore = Path(_str(secrets, 'keystore', KEYSTORE_DIR, 'secrets')).expanduser()
    if not keystore.is_absolute():
        keystore = root / keystore

    private_key = os.environ.get(ENV_KEY_FILE) or _str(secrets, 'private_key', PRIVATE_KEY_FILE, 'secrets')
    private_key_path = Path(private_key).expanduser()
    if not private_key_path.is_absolute():
        private_key_path = root / private_key_path

    secrets_document = _str(secrets, 'document', SECRETS_DOCUMENT, 'secrets')

    return ProjectSettings(
        root=root,
        base_document=_str(project, 'base_document', BASE_DOCUMENT, 'project'),
        base_variables=_str(project, 'base_variables', BASE_VARIABLES, 'project'),
        hosts_dir=_str(project, 'hosts_dir', HOSTS_DIR, 'project'),
        log_level=log_level,
        override_document=_str(host, 'override_document', OVERRIDE_DOCUMENT, 'host'),
        host_variables=_str(host, 'variables', HOST_VARIABLES, 'host'),
        secrets_document=secrets_document,
        secrets_plaintext=_str(secrets, 'plaintext', get_plaintext_name(secrets_document), 'secrets'),
        keystore=keystore,
        private_key=private_key_path,
        encrypted_regex=_regex(
            _str(secrets, 'encrypted_regex', DEFAULT_ENCRYPTED_REGEX, 'secrets'), 'secrets.encrypted_regex'
        ),
        rules=_parse_rules(secrets),
        inject_services=_str_list(secrets, 'inject_services', 'secrets'),
        sources=sources,
    )


def is_valid_host_name(host: str) -> bool:
    """A host name must be a single directory name under the hosts directory."""
    return bool(host) and host not in ('.', '..') and '/' not in host and '\\' not in host


def load_settings(root: Path, host: Optional[str] = None) -> ProjectSettings:
    """Render and merge the settings chain for ``root`` (and ``host`` when given)."""
    root = Path(root).resolve()
    context: dict[str, Any] = {
        "env": dict(os.environ),
        "host": host or "",
        "root": str(root),
    }

    merged: dict = {}
    sources: list[Path] = []

    for template in (root / SETTINGS_DEFAULTS, root / SETTINGS_OVERRIDES):
        if template.is_file():
            merged = merge(merged, render_settings_template(template, context), source=str(template))
            sources.append(template)

    if host:
        hosts_dir = _str(_section(merged, 'project'), 'hosts_dir', HOSTS_DIR, 'project')
        if not is_valid_host_name(host):
            raise HostNotFoundError(host, str(root / hosts_dir), [])
        host_template = root / hosts_dir / host / SETTINGS_OVERRIDES
        if host_template.is_file():
            merged = merge(merged, render_settings_template(host_template, context), source=str(host_template))
            sources.append(host_template)

    if not sources:
        logger.debug(f"No settings templates under {root}; using built-in defaults")

    return build_settings(root, merged, tuple(sources))
