#!/usr/bin/env python3
"""Report lines for render --print-context and check."""

from __future__ import annotations

from .config_constants import LAYER_SECRETS
from .resolver import Resolution


def build_context_lines(resolution: Resolution) -> list[str]:
    """Return debug lines for the resolved variable set; secret values are redacted."""
    values = resolution.redacted_variables()
    width = max((len(key) for key in values), default=0)

    lines = [f"=== Variables (host: {resolution.host}) ==="]
    for key, value in values.items():
        lines.append(f"  {key.ljust(width)} = {value}  [{resolution.provenance[key]}]")
    if not values:
        lines.append("  (none)")

    lines.append("=== Inputs ===")
    for path in resolution.layout.input_files():
        try:
            shown = path.relative_to(resolution.layout.root)
        except ValueError:
            shown = path
        lines.append(f"  {shown}")
    lines.append("=== End Context ===")
    return lines


def build_check_lines(resolution: Resolution, plaintext_secrets: dict[str, list[str]]) -> list[str]:
    """Return report lines for ``composehost check``."""
    services = resolution.document.get('services') or {}
    secret_count = sum(1 for layer in resolution.provenance.values() if layer == LAYER_SECRETS)

    lines = [
        f"Host: {resolution.host}",
        f"  services: {', '.join(services) if services else '(none)'}",
        f"  variables: {len(resolution.variables)} ({secret_count} from secrets)",
        f"  referenced: {len(resolution.references)}",
    ]
    unused = resolution.unused_variables
    if unused:
        lines.append(f"  unused: {', '.join(unused)}")
    for source, keys in plaintext_secrets.items():
        lines.append(f"  plaintext secret(s) in {source}: {', '.join(keys)}")
    return lines
