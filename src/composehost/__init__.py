"""composehost package."""

from __future__ import annotations

import os

_RELEASE_VERSION = "0.3.0"


def _build_version() -> str:
	override = os.getenv("COMPOSEHOST_BUILD_VERSION")
	if override:
		return override
	return _RELEASE_VERSION


__version__ = _build_version()
