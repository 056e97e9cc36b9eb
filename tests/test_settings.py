"""
Settings chain tests: Jinja2 rendering, TOML parsing, merge order, validation.
"""

from pathlib import Path

import pytest
import tomllib

from composehost.config_constants import DEFAULT_ENCRYPTED_REGEX, ENV_KEY_FILE, ENV_ROOT
from composehost.errors import HostNotFoundError, ParseError, SettingsError
from composehost.settings import (
    EncryptionRule,
    ProjectSettings,
    build_settings,
    find_project_root,
    load_settings,
    parse_toml_string,
)


def test_defaults_without_any_template(tmp_path) -> None:
    settings = load_settings(tmp_path)

    assert settings.base_document == "compose.yaml"
    assert settings.hosts_path == tmp_path.resolve() / "hosts"
    assert settings.keystore == tmp_path.resolve() / "keys"
    assert settings.encrypted_regex == DEFAULT_ENCRYPTED_REGEX
    assert settings.sources == ()


def test_sample_project_settings(sample_project, monkeypatch) -> None:
    monkeypatch.setenv(ENV_KEY_FILE, "/keys/mine.txt")

    settings = load_settings(sample_project, host="mabel")

    assert settings.root == sample_project.resolve()
    assert settings.log_level == "INFO"
    assert settings.private_key == Path("/keys/mine.txt")
    assert settings.keystore == sample_project.resolve() / "keys"
    assert [source.name for source in settings.sources] == ["composehost.defaults.toml.j2"]


def test_encryption_rule_selection(sample_project) -> None:
    settings = load_settings(sample_project)

    assert settings.rule_for_host("mabel").encrypted_regex == ".*PASSWORD.*"
    otis_rule = settings.rule_for_host("otis")
    assert otis_rule.encrypted_regex == ".*(PASSWORD|SECRET|TOKEN).*"
    assert otis_rule.recipients == ()


def test_first_matching_rule_wins() -> None:
    rules = (
        EncryptionRule(host_regex="^prod-", encrypted_regex="A", recipients=("ops",)),
        EncryptionRule(host_regex=".*", encrypted_regex="B"),
    )
    settings = ProjectSettings(root=Path("/srv"), rules=rules)

    assert settings.rule_for_host("prod-1").recipients == ("ops",)
    assert settings.rule_for_host("dev-1").encrypted_regex == "B"


def test_local_and_host_overrides_merge_in_order(sample_project) -> None:
    (sample_project / "composehost.toml.j2").write_text(
        '[project]\nlog_level = "{{ "warning" | upper }}"\n', encoding="utf-8"
    )
    (sample_project / "hosts" / "mabel" / "composehost.toml.j2").write_text(
        '[project]\nlog_level = "DEBUG"\n\n[secrets]\ninject_services = ["{{ host }}-web"]\n',
        encoding="utf-8",
    )

    mabel = load_settings(sample_project, host="mabel")
    otis = load_settings(sample_project, host="otis")

    assert mabel.log_level == "DEBUG"
    assert mabel.inject_services == ("mabel-web",)
    assert len(mabel.sources) == 3
    assert otis.log_level == "WARNING"
    assert otis.inject_services == ()
    # lower layers keep their keys
    assert mabel.encrypted_regex == ".*(PASSWORD|SECRET|TOKEN).*"


def test_template_sees_root(sample_project) -> None:
    (sample_project / "composehost.toml.j2").write_text(
        '[secrets]\nkeystore = "{{ root }}/pubkeys"\n', encoding="utf-8"
    )

    settings = load_settings(sample_project)

    assert settings.keystore == sample_project.resolve() / "pubkeys"


def test_undefined_template_variable(sample_project) -> None:
    (sample_project / "composehost.toml.j2").write_text(
        '[project]\nlog_level = "{{ missing_name }}"\n', encoding="utf-8"
    )

    with pytest.raises(SettingsError, match="failed to render"):
        load_settings(sample_project)


def test_toml_syntax_error_has_location() -> None:
    with pytest.raises(ParseError) as exc:
        parse_toml_string('[project]\nlog_level "INFO"\n', "composehost.toml.j2")

    assert exc.value.line == 2
    assert "TOML syntax error" in str(exc.value)


@pytest.mark.parametrize(
    "data, message",
    [
        ({"project": {"log_level": "LOUD"}}, "log_level must be one of"),
        ({"project": "nope"}, r"\[project\] must be a table"),
        ({"secrets": {"encrypted_regex": "("}}, "not a valid regular expression"),
        ({"secrets": {"inject_services": "web"}}, "must be a list of strings"),
        ({"secrets": {"rules": [{"host_regex": "["}]}}, "rules\\[0\\].host_regex"),
        ({"host": {"override_document": ""}}, "must be a non-empty string"),
    ],
)
def test_invalid_settings(data, message, tmp_path) -> None:
    with pytest.raises(SettingsError, match=message):
        build_settings(tmp_path, data)


def test_rule_inherits_global_regex(tmp_path) -> None:
    settings = build_settings(
        tmp_path, {"secrets": {"encrypted_regex": "KEY$", "rules": [{"host_regex": "^a$", "recipients": ["a"]}]}}
    )

    assert settings.rules[0].encrypted_regex == "KEY$"
    assert settings.rules[0].recipients == ("a",)


def test_as_dict_is_toml_serializable(sample_project) -> None:
    import tomli_w

    settings = load_settings(sample_project)
    parsed = tomllib.loads(tomli_w.dumps(settings.as_dict()))

    assert parsed["project"]["hosts_dir"] == "hosts"
    assert parsed["secrets"]["rules"][0]["host_regex"] == "^mabel$"


class TestFindProjectRoot:
    def test_walks_up_from_host_directory(self, sample_project) -> None:
        assert find_project_root(sample_project / "hosts" / "mabel") == sample_project.resolve()

    def test_compose_and_hosts_without_settings(self, tmp_path) -> None:
        (tmp_path / "compose.yaml").write_text("services: {}\n")
        (tmp_path / "hosts" / "a").mkdir(parents=True)

        assert find_project_root(tmp_path / "hosts" / "a") == tmp_path.resolve()

    def test_environment_override(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv(ENV_ROOT, str(tmp_path))

        assert find_project_root(Path("/")) == tmp_path.resolve()


def test_plaintext_name_follows_document_name(tmp_path) -> None:
    settings = build_settings(tmp_path, {"secrets": {"document": "db.enc.toml"}})

    assert settings.secrets_plaintext == "db.env"


@pytest.mark.parametrize("host", ["../outside", "..", "a/b", "a\\b"])
def test_host_template_outside_hosts_dir_is_never_rendered(sample_project, host) -> None:
    (sample_project / "outside").mkdir()
    (sample_project / "outside" / "composehost.toml.j2").write_text("{{ boom }}\n", encoding="utf-8")

    with pytest.raises(HostNotFoundError) as exc:
        load_settings(sample_project, host=host)

    assert exc.value.host == host
    assert str(exc.value).startswith("resolve: no host directory")


def test_non_utf8_template(sample_project) -> None:
    (sample_project / "composehost.toml.j2").write_bytes(b'[project]\nlog_level = "\xff"\n')

    with pytest.raises(ParseError, match="not valid UTF-8"):
        load_settings(sample_project)
