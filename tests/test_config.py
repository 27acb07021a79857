"""
Tests for document loading, value merging and the check use case.
"""

import pytest

from hostconverge.core.config import loader
from hostconverge.core.config.loader import (
    ConfigError,
    find_document,
    load_document,
    parse_env_file,
    parse_overrides,
)
from hostconverge.core.models.action import ActionKind
from hostconverge.core.templating import render_template, substitute
from hostconverge.core.use_cases import config_check
from hostconverge.core.use_cases.config_check import check_config, check_requirements
from hostconverge.core.models.document import HostRequirements


# ── Templating ──────────────────────────────────────────────────────


class TestTemplating:
    def test_known_keys_only(self):
        assert render_template("{a} {b} {}", {"a": "1"}) == "1 {b} {}"

    def test_substitute_nested(self):
        data = {"cmd": ["echo", "{x}"], "env": {"{x}": "{x}"}, "n": 3}
        assert substitute(data, {"x": "y"}) == {"cmd": ["echo", "y"], "env": {"{x}": "y"}, "n": 3}


# ── Discovery and parsing ───────────────────────────────────────────


class TestFindDocument:
    def test_walks_up(self, tmp_path):
        (tmp_path / "converge.yml").write_text("version: 1\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_document(nested) == (tmp_path / "converge.yml").resolve()

    def test_not_found(self, tmp_path, monkeypatch):
        monkeypatch.setattr(loader, "DOCUMENT_FILE", "no-such-converge-file.yml")
        assert find_document(tmp_path) is None


class TestOverrides:
    def test_parse(self):
        assert parse_overrides(["domain=example.org", "empty=", "eq=a=b"]) == {
            "domain": "example.org", "empty": "", "eq": "a=b",
        }

    @pytest.mark.parametrize("pair", ["novalue", "=x", " =x"])
    def test_invalid(self, pair):
        with pytest.raises(ConfigError, match="KEY=VALUE"):
            parse_overrides([pair])


class TestEnvFile:
    def test_formats(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text(
            "# comment\n"
            "\n"
            "PLAIN=value\n"
            'DOUBLE="with spaces"\n'
            "SINGLE='quoted'\n"
            "export EXPORTED=yes\n"
            "garbage line\n"
        )
        assert parse_env_file(env) == {
            "PLAIN": "value",
            "DOUBLE": "with spaces",
            "SINGLE": "quoted",
            "EXPORTED": "yes",
        }

    def test_unreadable(self, tmp_path):
        with pytest.raises(ConfigError):
            parse_env_file(tmp_path / "missing.env")


# ── load_document ───────────────────────────────────────────────────


class TestLoadDocument:
    def test_minimal(self, write_document, tmp_path):
        doc = load_document(write_document("""
            version: 1
            name: web
            actions:
              - id: caddy
                kind: package_set
                params: {packages: [caddy]}
        """))
        assert doc.name == "web"
        assert doc.actions[0].kind == ActionKind.PACKAGE_SET
        assert doc.base_dir == tmp_path.resolve()
        assert doc.state_dir == tmp_path.resolve() / ".state"

    def test_value_precedence(self, write_document, tmp_path):
        (tmp_path / ".env").write_text("domain=from-env.org\nport=9000\n")
        doc = load_document(write_document("""
            env_file: .env
            values:
              domain: from-doc.org
              port: 8000
              email: ops@example.org
        """), overrides={"port": "7000"})
        assert doc.values == {"domain": "from-env.org", "port": "7000", "email": "ops@example.org"}

    def test_missing_env_file_is_not_fatal(self, write_document):
        doc = load_document(write_document("""
            env_file: .env
            values: {a: "1"}
        """))
        assert doc.values == {"a": "1"}

    def test_self_reference(self, write_document):
        doc = load_document(write_document("""
            values:
              domain: library.example.org
              site_url: "https://{domain}/"
        """))
        assert doc.values["site_url"] == "https://library.example.org/"

    def test_substitution_into_params(self, write_document):
        doc = load_document(write_document("""
            values: {php: "8.3"}
            actions:
              - id: php
                kind: package_set
                params: {packages: ["php{php}-fpm"]}
                description: "PHP {php}"
              - id: fpm
                kind: service_state
                params: {name: "php{php}-fpm"}
                precondition:
                  - {fact: service, name: "php{php}-fpm"}
        """))
        assert doc.get_action("php").params.packages[0].name == "php8.3-fpm"
        assert doc.get_action("php").description == "PHP 8.3"
        assert doc.get_action("fpm").precondition[0].name == "php8.3-fpm"

    def test_template_path_resolved(self, write_document, tmp_path):
        doc = load_document(write_document("""
            actions:
              - id: caddyfile
                kind: rendered_file
                params: {template: templates/Caddyfile, dest: /etc/caddy/Caddyfile}
        """))
        assert doc.actions[0].params.template == str(tmp_path.resolve() / "templates" / "Caddyfile")

    def test_required_values(self, write_document):
        path = write_document("""
            required_values: [domain, email]
            values: {email: ""}
        """)
        with pytest.raises(ConfigError, match="domain, email"):
            load_document(path)
        doc = load_document(path, overrides={"domain": "a.org", "email": "b@a.org"})
        assert doc.values["domain"] == "a.org"

    def test_secret_values(self, write_document):
        doc = load_document(write_document("""
            values: {db_password: hunter2, domain: a.org}
            secrets: [db_password]
            actions:
              - id: db
                kind: database_schema
                params: {database: moodle, user: moodle, password: other-pass}
              - id: deploy
                kind: shell_step
                params: {command: "deploy --token t0k3n", creates: /srv/deployed}
                sensitive: [command]
        """))
        assert doc.secret_values() == {"hunter2", "other-pass", "deploy --token t0k3n"}

    @pytest.mark.parametrize(
        "content, match",
        [
            ("values: [1, 2\n", "Invalid YAML"),
            ("- just\n- a list\n", "Expected a YAML mapping"),
            ("actions: {a: 1}\n", "must be a list"),
            ("values: [a]\n", "must be a mapping"),
            ("surprise: true\n", "Invalid document"),
            ("actions:\n  - {id: a, kind: teleport, params: {}}\n", "Invalid document"),
        ],
    )
    def test_invalid(self, write_document, content, match):
        with pytest.raises(ConfigError, match=match):
            load_document(write_document(content))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_document(tmp_path / "converge.yml")


# ── check ───────────────────────────────────────────────────────────


class TestCheckConfig:
    def test_valid(self, write_document):
        result = check_config(write_document("""
            actions:
              - id: a
                kind: directory
                params: {path: /srv/a}
        """), check_host=False)
        assert result.valid
        assert result.errors == []
        assert result.warnings == []
        assert result.to_dict()["action_count"] == 1

    def test_cycle_is_an_error(self, write_document):
        result = check_config(write_document("""
            actions:
              - {id: a, kind: directory, params: {path: /a}, depends_on: [b]}
              - {id: b, kind: directory, params: {path: /b}, depends_on: [a]}
        """), check_host=False)
        assert not result.valid
        assert "a, b" in result.errors[0]

    def test_load_error(self, write_document):
        result = check_config(write_document("required_values: [domain]\n"))
        assert not result.valid
        assert "domain" in result.errors[0]

    def test_warnings(self, write_document):
        result = check_config(write_document("""
            actions:
              - id: migrate
                kind: shell_step
                params: {command: migrate.sh}
              - id: conf
                kind: rendered_file
                params: {template: missing.tpl, dest: /etc/x}
        """), check_host=False)
        assert result.valid
        assert any("'migrate'" in w and "runs on every apply" in w for w in result.warnings)
        assert any("'conf'" in w for w in result.warnings)

    def test_empty_document_warns(self, write_document):
        result = check_config(write_document("version: 1\n"), check_host=False)
        assert result.valid
        assert "No actions declared" in result.warnings[0]

    def test_memory_requirement(self, monkeypatch):
        monkeypatch.setattr(config_check, "_total_memory_mb", lambda: 1024)
        warnings = check_requirements(HostRequirements(min_memory_mb=4000))
        assert warnings == ["Host has 1024 MB RAM, document wants 4000 MB"]

    def test_disk_requirement(self, tmp_path):
        warnings = check_requirements(HostRequirements(min_disk_gb=10 ** 9, disk_path=str(tmp_path)))
        assert len(warnings) == 1
        assert "GB free" in warnings[0]

    def test_no_requirements(self):
        assert check_requirements(HostRequirements()) == []
