#!/usr/bin/env python3
"""
Template loader: parse compose documents, merge overrides, emit YAML.

Merge rules are chosen per value kind (see ``MergePolicy``):
1. mapping over mapping is merged key by key, recursively
2. list over list replaces the base list wholesale (no append)
3. scalar over scalar, or anything over/under null, takes the override
4. every other combination is a ConflictError naming the key path
"""

from __future__ import annotations

import copy
import enum
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConflictError, DocumentNotFoundError, ParseError
from .file_utils import read_text

logger = logging.getLogger(__name__)

# Service fields compose accepts either as a KEY=VALUE list or as a mapping
LIST_OR_MAPPING_FIELDS = ('environment', 'labels', 'annotations', 'extra_hosts')


class MergePolicy(enum.Enum):
    DEEP_MERGE = "deep-merge"
    REPLACE_LIST = "replace-list"
    REPLACE_SCALAR = "replace-scalar"


def value_kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, dict):
        return "mapping"
    if isinstance(value, list):
        return "list"
    return "scalar"


def select_merge_policy(base: Any, override: Any, path: str, source: Optional[str] = None) -> MergePolicy:
    """Pick the merge policy for a key present in both documents."""
    base_kind = value_kind(base)
    override_kind = value_kind(override)

    if "null" in (base_kind, override_kind):
        return MergePolicy.REPLACE_SCALAR
    if base_kind == override_kind == "mapping":
        return MergePolicy.DEEP_MERGE
    if base_kind == override_kind == "list":
        return MergePolicy.REPLACE_LIST
    if base_kind == override_kind == "scalar":
        return MergePolicy.REPLACE_SCALAR
    raise ConflictError(path, base_kind, override_kind, source=source)


def _join(parent: str, key: Any) -> str:
    return f"{parent}.{key}" if parent else str(key)


def merge(base: dict, override: dict, source: Optional[str] = None, _path: str = "") -> dict:
    """
    Merge an override document over a base document.

    Neither input is modified; the result shares no containers with them.
    """
    result = copy.deepcopy(base)

    for key, value in override.items():
        path = _join(_path, key)
        if key not in result:
            logger.debug(f"  New key: {path}")
            result[key] = copy.deepcopy(value)
            continue

        policy = select_merge_policy(result[key], value, path, source=source)
        if policy is MergePolicy.DEEP_MERGE:
            result[key] = merge(result[key], value, source=source, _path=path)
        else:
            logger.debug(f"  Override ({policy.value}): {path}")
            result[key] = copy.deepcopy(value)

    return result


def _list_to_mapping(items: list, path: str, source: str) -> dict:
    mapping: dict = {}
    for index, item in enumerate(items):
        if not isinstance(item, str):
            raise ParseError(
                f"expected KEY=VALUE string at {path}[{index}], got {value_kind(item)}", source
            )
        if "=" in item:
            key, value = item.split("=", 1)
            mapping[key] = value
        elif path.endswith(".extra_hosts"):
            # HOST:IP form; an IPv6 address keeps its colons
            if ":" not in item:
                raise ParseError(f"expected HOST=IP or HOST:IP at {path}[{index}], got {item!r}", source)
            key, value = item.split(":", 1)
            mapping[key] = value
        else:
            mapping[item] = None
    return mapping


def normalize_document(document: dict, source: str = "<document>") -> dict:
    """
    Convert list-form service fields (environment, labels, annotations,
    extra_hosts, build.args) to mappings so base and override forms merge by key.
    """
    services = document.get('services')
    if not isinstance(services, dict):
        return document

    for name, service in services.items():
        if not isinstance(service, dict):
            continue
        for field in LIST_OR_MAPPING_FIELDS:
            if isinstance(service.get(field), list):
                service[field] = _list_to_mapping(service[field], f"services.{name}.{field}", source)
        build = service.get('build')
        if isinstance(build, dict) and isinstance(build.get('args'), list):
            build['args'] = _list_to_mapping(build['args'], f"services.{name}.build.args", source)

    return document


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects a key repeated in one mapping."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                raise yaml.constructor.ConstructorError(
                    None, None, f"duplicate key {key!r}", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep)


def parse_document(text: str, source: str = "<string>") -> dict:
    """
    Parse YAML text into a mapping, preserving key order.

    Raises:
        ParseError: malformed YAML or a duplicate key (with 1-based line/column),
            or a non-mapping top level
    """
    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark or e.context_mark
        problem = e.problem or str(e)
        if mark is not None:
            raise ParseError(problem, source, mark.line + 1, mark.column + 1) from e
        raise ParseError(problem, source) from e
    except yaml.YAMLError as e:
        raise ParseError(str(e), source) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError(f"top level must be a mapping, got {value_kind(data)}", source, 1, 1)
    return normalize_document(data, source)


def load_document(path: Path, role: str = "document") -> dict:
    path = Path(path)
    if not path.is_file():
        raise DocumentNotFoundError(str(path), role)

    logger.debug(f"Loading {role}: {path}")
    return parse_document(read_text(path), str(path))


def escape_dollars(value: Any) -> Any:
    """Double every '$' so docker compose does not interpolate resolved values again."""
    if isinstance(value, dict):
        return {key: escape_dollars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [escape_dollars(item) for item in value]
    if isinstance(value, str):
        return value.replace('$', '$$')
    return value


def dump_document(document: dict, escape: bool = True) -> str:
    """
    Serialize a resolved document as YAML accepted by docker compose.

    With ``escape`` (the default) literal dollar signs are written as ``$$``,
    which compose reads back as a single ``$``.
    """
    if escape:
        document = escape_dollars(document)
    return yaml.safe_dump(
        document,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )
