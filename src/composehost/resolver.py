#!/usr/bin/env python3
"""
Host override resolution pipeline.

Phases (each completes before the next starts, any error aborts the run):
1. Locate: base document, host directory, host override and secret document
2. Secrets: decrypt the host secret document into a process-local variable set
3. Variables: layer base .env, decrypted secrets, host .env (later wins)
4. Interpolate base and override documents against the merged variables
5. Merge override over base and inject secrets into opted-in services

Nothing here writes to disk; a resolution is a pure function of the project
files, the host identity and the private key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .config_constants import LAYER_BASE, LAYER_HOST, LAYER_SECRETS, REDACTED
from .crypto import Identity, load_identity
from .envfile import load_env_file_if_exists
from .errors import HostNotFoundError, SettingsError
from .interpolation import find_references, interpolate
from .loader import load_document, merge
from .secret_store import decrypt_document, load_secret_document
from .settings import ProjectSettings, is_valid_host_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostLayout:
    """Where every input of one host lives."""

    host: str
    root: Path
    base_document: Path
    base_variables: Path
    host_dir: Path
    override_document: Path
    host_variables: Path
    secrets_document: Path
    secrets_plaintext: Path

    @property
    def has_override(self) -> bool:
        return self.override_document.is_file()

    @property
    def has_secrets(self) -> bool:
        return self.secrets_document.is_file()

    def input_files(self) -> list[Path]:
        candidates = [
            self.base_document,
            self.base_variables,
            self.override_document,
            self.host_variables,
            self.secrets_document,
        ]
        return [path for path in candidates if path.is_file()]


@dataclass(frozen=True)
class VariableLayer:
    name: str
    values: dict[str, str]
    source: Optional[Path] = None


@dataclass(frozen=True)
class Resolution:
    host: str
    layout: HostLayout
    document: dict
    variables: dict[str, str]
    provenance: dict[str, str]
    references: frozenset[str] = field(default_factory=frozenset)

    @property
    def secret_keys(self) -> frozenset[str]:
        return frozenset(key for key, layer in self.provenance.items() if layer == LAYER_SECRETS)

    @property
    def unused_variables(self) -> list[str]:
        return sorted(set(self.variables) - self.references)

    def redacted_variables(self) -> dict[str, str]:
        return {
            key: (REDACTED if self.provenance.get(key) == LAYER_SECRETS else value)
            for key, value in self.variables.items()
        }


def list_hosts(settings: ProjectSettings) -> list[str]:
    hosts_path = settings.hosts_path
    if not hosts_path.is_dir():
        return []
    return sorted(
        entry.name for entry in hosts_path.iterdir()
        if entry.is_dir() and not entry.name.startswith('.')
    )


def locate_host(settings: ProjectSettings, host: str) -> HostLayout:
    """
    Locate every input file for ``host``.

    Raises:
        HostNotFoundError: no ``<hosts_dir>/<host>/`` directory
    """
    if not is_valid_host_name(host):
        raise HostNotFoundError(host, str(settings.hosts_path), list_hosts(settings))

    host_dir = settings.host_path(host)
    if not host_dir.is_dir():
        raise HostNotFoundError(host, str(settings.hosts_path), list_hosts(settings))

    layout = HostLayout(
        host=host,
        root=settings.root,
        base_document=settings.root / settings.base_document,
        base_variables=settings.root / settings.base_variables,
        host_dir=host_dir,
        override_document=host_dir / settings.override_document,
        host_variables=host_dir / settings.host_variables,
        secrets_document=host_dir / settings.secrets_document,
        secrets_plaintext=host_dir / settings.secrets_plaintext,
    )
    logger.debug(
        f"Host '{host}': override={'yes' if layout.has_override else 'no'}, "
        f"secrets={'yes' if layout.has_secrets else 'no'}"
    )
    return layout


def load_host_secrets(
    layout: HostLayout,
    settings: ProjectSettings,
    identity: Optional[Identity] = None,
) -> dict[str, str]:
    """
    Decrypt the host secret document, if the host has one.

    The private key is only needed (and only loaded) when there is something
    to decrypt.
    """
    if not layout.has_secrets:
        logger.debug(f"No secret document for host '{layout.host}'")
        return {}

    document = load_secret_document(layout.secrets_document)
    if identity is None:
        identity = load_identity(settings.private_key)
    return decrypt_document(document, identity)


def merge_variable_layers(layers: Iterable[VariableLayer]) -> tuple[dict[str, str], dict[str, str]]:
    """
    Merge layers in order; a later layer shadows same-named keys of earlier ones.

    Returns:
        (variables, provenance) where provenance maps each key to its layer name
    """
    variables: dict[str, str] = {}
    provenance: dict[str, str] = {}

    for layer in layers:
        for key, value in layer.values.items():
            if key in variables:
                logger.debug(f"  Variable {key}: {layer.name} overrides {provenance[key]}")
            variables[key] = value
            provenance[key] = layer.name
        logger.debug(f"  Layer {layer.name}: {len(layer.values)} variable(s) from {layer.source or '-'}")

    return variables, provenance


def inject_secrets(document: dict, secrets: dict[str, str], services: Iterable[str]) -> dict:
    """
    Add decrypted secrets to the environment of the named services.

    A value written inline in the service ``environment`` always wins over a
    same-named secret.
    """
    services = list(services)
    if not services or not secrets:
        return document

    defined = document.get('services')
    if not isinstance(defined, dict):
        defined = {}

    unknown = [name for name in services if name not in defined]
    if unknown:
        raise SettingsError(f"secrets.inject_services names unknown service(s): {', '.join(unknown)}")

    for name in services:
        service = defined[name]
        environment = service.get('environment')
        if environment is None:
            environment = {}
            service['environment'] = environment
        if not isinstance(environment, dict):
            raise SettingsError(f"services.{name}.environment must be a mapping to inject secrets")

        injected = 0
        for key, value in secrets.items():
            if key in environment:
                logger.debug(f"  {name}: inline environment.{key} kept over secret")
                continue
            environment[key] = value
            injected += 1
        logger.debug(f"  {name}: injected {injected} secret variable(s)")

    return document


def resolve(
    settings: ProjectSettings,
    host: str,
    identity: Optional[Identity] = None,
) -> Resolution:
    """Run the full resolution pipeline for one host."""
    logger.debug(f"Resolving host '{host}' under {settings.root}")
    layout = locate_host(settings, host)

    base_document = load_document(layout.base_document, role="base document")
    override_document = (
        load_document(layout.override_document, role="override document") if layout.has_override else {}
    )

    secrets = load_host_secrets(layout, settings, identity=identity)

    variables, provenance = merge_variable_layers([
        VariableLayer(LAYER_BASE, load_env_file_if_exists(layout.base_variables), layout.base_variables),
        VariableLayer(LAYER_SECRETS, secrets, layout.secrets_document if secrets else None),
        VariableLayer(LAYER_HOST, load_env_file_if_exists(layout.host_variables), layout.host_variables),
    ])

    references = find_references(base_document, str(layout.base_document)) | find_references(
        override_document, str(layout.override_document)
    )

    resolved_base = interpolate(base_document, variables, source=str(layout.base_document))
    resolved_override = interpolate(override_document, variables, source=str(layout.override_document))

    document = merge(resolved_base, resolved_override, source=str(layout.override_document))

    # only secrets that survived layering; a host .env value shadows the secret
    effective_secrets = {key: variables[key] for key, layer in provenance.items() if layer == LAYER_SECRETS}
    document = inject_secrets(document, effective_secrets, settings.inject_services)

    logger.debug(
        f"Resolved host '{host}': {len(variables)} variable(s), "
        f"{len(document.get('services', {}) or {})} service(s)"
    )
    return Resolution(
        host=host,
        layout=layout,
        document=document,
        variables=variables,
        provenance=provenance,
        references=frozenset(references),
    )
