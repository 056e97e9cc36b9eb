"""
Template loader tests: parsing, merge policy, normalization, output.
"""

import copy

import pytest
import yaml

from composehost.errors import ConflictError, DocumentNotFoundError, ParseError
from composehost.loader import (
    MergePolicy,
    dump_document,
    load_document,
    merge,
    parse_document,
    select_merge_policy,
)


class TestParseDocument:
    def test_preserves_key_order(self):
        document = parse_document("zeta: 1\nalpha: 2\nmid: 3\n")

        assert list(document) == ["zeta", "alpha", "mid"]

    def test_empty_document_is_empty_mapping(self):
        assert parse_document("") == {}
        assert parse_document("# only a comment\n") == {}

    def test_malformed_yaml_reports_location(self):
        with pytest.raises(ParseError) as exc:
            parse_document("key: value\nbad: x: y\n", "compose.yaml")

        assert exc.value.source == "compose.yaml"
        assert exc.value.line == 2
        assert exc.value.column == 7
        assert "compose.yaml:2:7" in str(exc.value)
        assert str(exc.value).startswith("parse:")

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ParseError, match="top level must be a mapping"):
            parse_document("- a\n- b\n")

    def test_list_environment_is_normalized(self):
        document = parse_document(
            "services:\n"
            "  web:\n"
            "    environment:\n"
            "      - A=1\n"
            "      - B\n"
            "    build:\n"
            "      args: [VERSION=2]\n"
        )

        web = document["services"]["web"]
        assert web["environment"] == {"A": "1", "B": None}
        assert web["build"]["args"] == {"VERSION": "2"}

    def test_load_missing_document(self, tmp_path):
        with pytest.raises(DocumentNotFoundError, match="base document not found"):
            load_document(tmp_path / "compose.yaml", role="base document")

    def test_load_non_utf8_document(self, tmp_path):
        path = tmp_path / "compose.yaml"
        path.write_bytes(b"services:\n  web:\n    image: \xff\xfe\n")

        with pytest.raises(ParseError, match="not valid UTF-8") as exc:
            load_document(path)

        assert exc.value.source == str(path)

    def test_duplicate_key_reports_location(self):
        with pytest.raises(ParseError, match="duplicate key 'image'") as exc:
            parse_document("services:\n  web:\n    image: a\n    image: b\n", "compose.yaml")

        assert exc.value.line == 4
        assert exc.value.column == 5

    def test_duplicate_top_level_service_block(self):
        with pytest.raises(ParseError, match="duplicate key 'services'"):
            parse_document("services:\n  web: {}\nservices:\n  db: {}\n")

    def test_merge_keys_are_not_duplicates(self):
        document = parse_document(
            "x-common: &common\n"
            "  restart: always\n"
            "services:\n"
            "  web:\n"
            "    <<: *common\n"
            "    restart: \"no\"\n"
        )

        assert document["services"]["web"] == {"restart": "no"}

    def test_list_extra_hosts_is_normalized(self):
        document = parse_document(
            "services:\n"
            "  web:\n"
            "    extra_hosts:\n"
            "      - \"db.internal:10.0.0.5\"\n"
            "      - \"gw=192.168.1.1\"\n"
            "      - \"v6.internal:::1\"\n"
        )

        assert document["services"]["web"]["extra_hosts"] == {
            "db.internal": "10.0.0.5",
            "gw": "192.168.1.1",
            "v6.internal": "::1",
        }

    def test_extra_hosts_entry_without_address(self):
        with pytest.raises(ParseError, match="expected HOST=IP or HOST:IP"):
            parse_document("services:\n  web:\n    extra_hosts: [db.internal]\n")


class TestMergePolicy:
    def test_policy_per_kind(self):
        assert select_merge_policy({}, {}, "a") is MergePolicy.DEEP_MERGE
        assert select_merge_policy([1], [2], "a") is MergePolicy.REPLACE_LIST
        assert select_merge_policy(1, "x", "a") is MergePolicy.REPLACE_SCALAR
        assert select_merge_policy(None, [1], "a") is MergePolicy.REPLACE_SCALAR
        assert select_merge_policy({"k": 1}, None, "a") is MergePolicy.REPLACE_SCALAR

    def test_mapping_vs_list_conflicts(self):
        with pytest.raises(ConflictError) as exc:
            select_merge_policy({"k": 1}, ["k"], "services.web.ports")

        assert exc.value.path == "services.web.ports"
        assert exc.value.base_kind == "mapping"
        assert exc.value.override_kind == "list"

    def test_container_vs_scalar_conflicts(self):
        with pytest.raises(ConflictError):
            select_merge_policy([1, 2], "1,2", "a")


class TestMerge:
    def test_disjoint_keys_union(self):
        assert merge({"a": 1}, {"b": 2}) == {"a": 1, "b": 2}

    def test_scalar_override_wins(self):
        assert merge({"port": 8080}, {"port": 9090}) == {"port": 9090}

    def test_list_replaced_not_appended(self):
        base = {"services": {"web": {"ports": ["8080:80", "8443:443"]}}}
        override = {"services": {"web": {"ports": ["9090:80"]}}}

        assert merge(base, override)["services"]["web"]["ports"] == ["9090:80"]

    def test_nested_mappings_deep_merge(self):
        base = {"services": {"web": {"image": "nginx", "environment": {"A": "1", "B": "2"}}}}
        override = {"services": {"web": {"environment": {"B": "3", "C": "4"}}, "db": {"image": "pg"}}}

        result = merge(base, override)

        assert result == {
            "services": {
                "web": {"image": "nginx", "environment": {"A": "1", "B": "3", "C": "4"}},
                "db": {"image": "pg"},
            }
        }

    def test_conflict_reports_dotted_path(self):
        with pytest.raises(ConflictError, match="services.web.ports"):
            merge({"services": {"web": {"ports": ["80:80"]}}}, {"services": {"web": {"ports": {"a": "b"}}}})

    def test_inputs_are_not_mutated(self):
        base = {"a": {"b": [1, 2]}, "c": 1}
        override = {"a": {"d": 3}, "c": 2}
        base_before = copy.deepcopy(base)
        override_before = copy.deepcopy(override)

        result = merge(base, override)
        result["a"]["b"].append(99)

        assert base == base_before
        assert override == override_before

    def test_list_and_mapping_extra_hosts_merge(self):
        base = parse_document("services:\n  web:\n    extra_hosts: [\"db:10.0.0.5\", \"cache:10.0.0.6\"]\n")
        override = parse_document("services:\n  web:\n    extra_hosts:\n      db: 10.0.0.9\n")

        merged = merge(base, override)

        assert merged["services"]["web"]["extra_hosts"] == {"db": "10.0.0.9", "cache": "10.0.0.6"}

    def test_list_and_mapping_environment_forms_merge(self):
        base = parse_document("services:\n  web:\n    environment: [A=1, B=2]\n")
        override = parse_document("services:\n  web:\n    environment:\n      B: '3'\n")

        assert merge(base, override)["services"]["web"]["environment"] == {"A": "1", "B": "3"}


class TestDumpDocument:
    def test_round_trips_through_yaml(self):
        document = {"name": "homelab", "services": {"web": {"ports": ["9090:80"], "image": "nginx"}}}

        text = dump_document(document)

        assert yaml.safe_load(text) == document
        assert text.index("ports") < text.index("image")

    def test_dollar_signs_are_escaped_for_compose(self):
        text = dump_document({"services": {"web": {"environment": {"PW": "a$b"}}}})

        assert yaml.safe_load(text)["services"]["web"]["environment"]["PW"] == "a$$b"

    def test_escape_can_be_disabled(self):
        text = dump_document({"x": "a$b"}, escape=False)

        assert yaml.safe_load(text) == {"x": "a$b"}
