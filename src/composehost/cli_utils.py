#!/usr/bin/env python3
"""Shared CLI helpers."""

from __future__ import annotations

import os
import socket


def get_cli_version() -> str:
    try:
        from importlib.metadata import version as package_version

        return package_version("composehost")
    except Exception:
        try:
            from . import __version__  # type: ignore

            return __version__
        except Exception:
            return "unknown"


def default_host_identity() -> str:
    """Return $COMPOSEHOST_HOST, falling back to the short system hostname."""
    from .config_constants import ENV_HOST

    override = os.getenv(ENV_HOST)
    if override:
        return override
    return socket.gethostname().split(".", 1)[0]
